"""Exception classes for tutor-gateway."""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all tutor-gateway errors."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class QuotaExceeded(GatewayError):
    """Raised when a user exceeds the per-minute request quota."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Too many questions in a short time (limit {limit}/minute). "
            "Take a moment to think before asking again.",
            code="RATE_LIMIT_EXCEEDED",
        )
        self.limit = limit


class SafetyViolation(GatewayError):
    """Raised when student input matches a safety pattern."""

    def __init__(self, pattern: str) -> None:
        super().__init__(
            "Your message contains instructions that conflict with the tutor's rules. "
            "Please describe your understanding, your approach, or the error you are seeing.",
            code="SAFETY_VIOLATION",
        )
        self.pattern = pattern


class ConfigError(GatewayError):
    """Raised for invalid configuration mutations."""

    def __init__(self, message: str, *, code: str = "CONFIG_INVALID") -> None:
        super().__init__(message, code=code)


class ConfigIncomplete(ConfigError):
    """Raised when no usable upstream model is configured."""

    def __init__(self, message: str = "The AI service is not configured. Ask an administrator to add a model endpoint.") -> None:
        super().__init__(message, code="CONFIG_INCOMPLETE")


class UpstreamError(GatewayError):
    """Base for a single upstream endpoint failure."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status = status


class UpstreamAuthError(UpstreamError):
    """Raised for 401 Unauthorized responses."""

    pass


class UpstreamRateLimited(UpstreamError):
    """Raised for 429 Too Many Requests responses."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: int | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message, code=code, status=status)
        self.retry_after = retry_after


class UpstreamUnavailable(UpstreamError):
    """Raised for 5xx responses and connection failures."""

    pass


class UpstreamTimeout(UpstreamError):
    """Raised when an upstream call exceeds its timeout."""

    pass


class UpstreamBadResponse(UpstreamError):
    """Raised for malformed or empty response bodies."""

    pass


class UpstreamRequestError(UpstreamError):
    """Raised for other 4xx responses."""

    pass


class AggregatedGatewayFailure(GatewayError):
    """Raised when every fallback candidate failed."""

    def __init__(self, last_error: UpstreamError | None, attempts: int) -> None:
        super().__init__(
            f"All {attempts} upstream model(s) failed; last error: {last_error}",
            code="SERVICE_UNAVAILABLE",
        )
        self.last_error = last_error
        self.attempts = attempts


class ClassificationError(GatewayError):
    """Raised internally when a conversation cannot be classified."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CLASSIFICATION_ERROR")
