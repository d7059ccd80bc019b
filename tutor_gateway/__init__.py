"""Multi-endpoint LLM gateway for an AI programming tutor."""

from tutor_gateway.background import EvaluationScheduler
from tutor_gateway.effectiveness import EffectivenessClassifier
from tutor_gateway.errors import (
    AggregatedGatewayFailure,
    ConfigError,
    ConfigIncomplete,
    GatewayError,
    QuotaExceeded,
    SafetyViolation,
    UpstreamError,
)
from tutor_gateway.gateway import GatewayClient, GatewayResult
from tutor_gateway.model_config import ModelConfigResolver
from tutor_gateway.pipeline import ChatPipeline
from tutor_gateway.quota import QuotaGuard
from tutor_gateway.safety import SafetyScreener

__version__ = "0.1.0"

__all__: list[str] = [
    "ChatPipeline",
    "EffectivenessClassifier",
    "EvaluationScheduler",
    "GatewayClient",
    "GatewayResult",
    "ModelConfigResolver",
    "QuotaGuard",
    "SafetyScreener",
    "GatewayError",
    "QuotaExceeded",
    "SafetyViolation",
    "ConfigError",
    "ConfigIncomplete",
    "UpstreamError",
    "AggregatedGatewayFailure",
]
