# tutor_gateway/models.py
from datetime import datetime
from sqlalchemy import Column, String, Text, Integer, DateTime, Index, JSON
from tutor_gateway.database import Base


class GatewayConfigRecord(Base):
    __tablename__ = "gateway_config"

    id = Column(String, primary_key=True)  # Always "default"
    schema_version = Column(Integer, nullable=False, default=0)
    document = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


class SafetyIncident(Base):
    __tablename__ = "safety_incidents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    conversation_id = Column(String, nullable=True)
    question_type = Column(String, nullable=True)
    matched_pattern = Column(Text, nullable=False)
    matched_excerpt = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_safety_incidents_created", "created_at"),
        Index("idx_safety_incidents_user", "user_id", "created_at"),
    )
