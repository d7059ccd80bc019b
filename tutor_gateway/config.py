# tutor_gateway/config.py
import warnings
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql://localhost/tutor_gateway"
    redis_url: str = "redis://localhost:6379"
    encryption_key: str = ""  # Required for upstream credential encryption
    previous_encryption_keys: str = ""  # Comma-separated, accepted for decryption only

    # Quota
    default_requests_per_minute: int = 5
    quota_ttl_seconds: int = 120
    quota_fail_open: bool = True  # Allow requests when the quota store is unreachable
    quota_store_timeout_seconds: float = 0.5  # Connect and command timeout for Redis

    # Safety screening
    safety_policy: Literal["block", "log"] = "block"
    safety_match_timeout_seconds: float = 0.05
    max_custom_pattern_length: int = 256
    max_custom_patterns: int = 50
    max_excerpt_length: int = 160

    # Topic guard
    off_topic_strike_limit: int = 2  # Consecutive off-topic turns answered without a model call; 0 disables
    off_topic_strike_ttl_seconds: int = 3600

    # Upstream providers
    default_timeout_seconds: int = 30
    allow_private_endpoints: bool = False
    completion_temperature: float = 0.7
    completion_max_tokens: int = 1500

    # Input limits
    max_student_text_length: int = 2000
    max_code_length: int = 5000

    class Config:
        env_file = ".env"

    def validate_secrets(self) -> None:
        """Validate that required secrets are configured.

        Call this at application startup to fail fast if secrets are missing.
        """
        if not self.encryption_key:
            raise ValueError(
                "Required secrets not configured: ENCRYPTION_KEY. "
                "Set this environment variable before starting the gateway."
            )


settings = Settings()

# Warn at import time if the key is not configured (don't fail yet for tests)
if not settings.encryption_key:
    warnings.warn(
        "ENCRYPTION_KEY not configured. Upstream credentials cannot be "
        "encrypted or decrypted until it is set.",
        UserWarning,
    )
