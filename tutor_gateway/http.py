"""Wire format helpers for OpenAI-compatible chat-completion endpoints."""

from __future__ import annotations

import contextlib
import sys
from typing import Any

from jsonpath_ng import parse as jsonpath_parse

from tutor_gateway.errors import (
    UpstreamAuthError,
    UpstreamBadResponse,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamRequestError,
    UpstreamUnavailable,
)

VERSION = "0.1.0"

CONTENT_PATH = jsonpath_parse("$.choices[0].message.content")
MODEL_IDS_PATH = jsonpath_parse("$.data[*].id")


def chat_completions_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/chat/completions"


def models_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/models"


def build_headers(credential: str) -> dict[str, str]:
    """Build HTTP request headers.

    Args:
        credential: Decrypted provider credential.

    Returns:
        Dict of headers to include in requests.
    """
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}"
    user_agent = f"tutor-gateway/{VERSION} python/{python_version}"

    return {
        "Authorization": f"Bearer {credential}",
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": user_agent,
    }


def build_payload(
    model: str,
    messages: list[dict[str, str]],
    system_prompt: str,
    temperature: float,
    max_tokens: int,
) -> dict[str, Any]:
    """Build the chat-completion request body with the system prompt first."""
    return {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt}, *messages],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }


def _error_message(body: dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "Unknown error")
    if error:
        return str(error)
    return "Unknown error"


def map_status_to_error(
    status: int,
    body: dict[str, Any],
    headers: dict[str, str],
) -> UpstreamError:
    """Map an upstream HTTP status code to the matching exception.

    Args:
        status: HTTP status code.
        body: Response body as dict.
        headers: Response headers.

    Returns:
        Appropriate UpstreamError subclass instance.
    """
    message = _error_message(body)

    if status == 401:
        return UpstreamAuthError(
            message=f"Credential rejected: {message}",
            code="upstream_auth_error",
            status=status,
        )
    elif status == 429:
        retry_after: int | None = None
        retry_after_header = headers.get("retry-after")
        if retry_after_header is not None:
            with contextlib.suppress(ValueError):
                retry_after = int(retry_after_header)
        return UpstreamRateLimited(
            message=f"Provider rate limit reached: {message}",
            code="upstream_rate_limited",
            status=status,
            retry_after=retry_after,
        )
    elif status >= 500:
        return UpstreamUnavailable(
            message=f"Provider unavailable (HTTP {status}): {message}",
            code="upstream_unavailable",
            status=status,
        )
    else:
        return UpstreamRequestError(
            message=f"Provider rejected request (HTTP {status}): {message}",
            code="upstream_request_error",
            status=status,
        )


def extract_content(response: Any) -> str:
    """Extract the assistant message from a chat-completion response.

    Raises UpstreamBadResponse if the content is missing or empty.
    """
    matches = CONTENT_PATH.find(response) if isinstance(response, dict) else []
    content = matches[0].value if matches else None

    if not isinstance(content, str) or not content.strip():
        raise UpstreamBadResponse(
            message="Provider returned an empty completion",
            code="upstream_bad_response",
        )
    return content


def extract_model_ids(response: Any) -> list[str]:
    """Extract model ids from a /models listing."""
    if not isinstance(response, dict):
        return []
    return [match.value for match in MODEL_IDS_PATH.find(response) if isinstance(match.value, str)]
