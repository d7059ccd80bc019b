# tutor_gateway/schemas.py
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Configuration document
class ModelEndpoint(BaseModel):
    id: str
    name: str
    base_url: str
    credential_encrypted: str = Field(default="", repr=False)
    models: list[str] = Field(default_factory=list)
    models_last_fetched: Optional[datetime] = None
    enabled: bool = True


class SelectedModel(BaseModel):
    endpoint_id: str
    model_name: str


class GatewayConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = 0
    endpoints: list[ModelEndpoint] = Field(default_factory=list)
    selected_models: list[SelectedModel] = Field(default_factory=list)
    timeout_seconds: int = Field(default=30, ge=1, le=600)
    requests_per_minute: int = Field(default=5, ge=0)
    prompt_template: Optional[str] = None
    custom_safety_patterns_text: Optional[str] = None
    updated_at: Optional[datetime] = None

    # Legacy single-endpoint fields, kept to allow rollback
    base_url: Optional[str] = None
    model_name: Optional[str] = None
    credential_encrypted: Optional[str] = Field(default=None, repr=False)

    def endpoint(self, endpoint_id: str) -> Optional[ModelEndpoint]:
        for endpoint in self.endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None


class ResolvedModel(BaseModel):
    endpoint_id: str
    endpoint_name: str
    base_url: str
    credential: str = Field(repr=False)
    model_name: str
    timeout_seconds: int


# Chat turn
class QuestionType(str, Enum):
    UNDERSTAND = "understand"
    THINK = "think"
    DEBUG = "debug"
    REVIEW = "review"
    CLARIFY = "clarify"
    OPTIMIZE = "optimize"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatTurn(BaseModel):
    tenant_id: str
    user_id: str
    question_type: QuestionType
    student_text: str = ""
    attached_code: Optional[str] = None
    conversation_id: Optional[str] = None
    problem_content: Optional[str] = None  # Trusted problem statement


class ChatOutcome(BaseModel):
    allowed: bool
    blocked: bool = False
    pattern: Optional[str] = None
    content: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    used_model: Optional[str] = None
    code_warning: Optional[str] = None
    off_topic: bool = False
    rewritten: bool = False


# Effectiveness
class StoredMessage(BaseModel):
    role: str
    content: str


class EffectivenessVerdict(BaseModel):
    conversation_id: str
    is_effective: bool
    evaluated_at: datetime
    failed_check: Optional[str] = None


# Connection check
class ConnectionCheck(BaseModel):
    success: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None
