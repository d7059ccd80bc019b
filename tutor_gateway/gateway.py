"""Chat-completion client with ordered fallback across upstream endpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Sequence

import httpx

from tutor_gateway.config import settings
from tutor_gateway.errors import (
    AggregatedGatewayFailure,
    ConfigIncomplete,
    UpstreamBadResponse,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from tutor_gateway.http import (
    build_headers,
    build_payload,
    chat_completions_url,
    extract_content,
    extract_model_ids,
    map_status_to_error,
    models_url,
)
from tutor_gateway.schemas import ChatMessage, ConnectionCheck, ResolvedModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    content: str
    used_model: ResolvedModel
    attempts: int


class GatewayClient:
    """Sends one chat turn to the first upstream model that answers.

    Candidates are tried strictly in order, one attempt each. Any per-endpoint
    failure (401, 429, 5xx, other 4xx, network error, timeout, empty body)
    advances to the next candidate. Cancellation of the calling task is not
    intercepted, so a cancelled ``send`` stops without further attempts.

    Usage:
        async with GatewayClient() as gateway:
            result = await gateway.send(models, messages, system_prompt)

    Args:
        http_client: Optional shared httpx.AsyncClient. One is created (and
            closed on exit) when omitted.
        temperature: Sampling temperature. Defaults to settings.
        max_tokens: Completion token cap. Defaults to settings.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self.temperature = temperature if temperature is not None else settings.completion_temperature
        self.max_tokens = max_tokens if max_tokens is not None else settings.completion_max_tokens

    async def __aenter__(self) -> GatewayClient:
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit async context manager."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    async def send(
        self,
        ordered_models: Sequence[ResolvedModel],
        messages: Sequence[ChatMessage],
        system_prompt: str,
    ) -> GatewayResult:
        """Return the first successful completion in fallback order.

        Raises:
            ConfigIncomplete: If no models are configured.
            AggregatedGatewayFailure: If every candidate failed.
        """
        if not ordered_models:
            raise ConfigIncomplete()

        payload_messages = [message.model_dump() for message in messages]
        last_error: UpstreamError | None = None
        attempts = 0

        for model in ordered_models:
            attempts += 1
            try:
                content = await self._complete(model, payload_messages, system_prompt)
            except UpstreamError as e:
                last_error = e
                logger.warning(
                    "Model %s/%s failed (attempt %d/%d): %s",
                    model.endpoint_name,
                    model.model_name,
                    attempts,
                    len(ordered_models),
                    e,
                )
                continue

            logger.info("Answered by %s/%s after %d attempt(s)", model.endpoint_name, model.model_name, attempts)
            return GatewayResult(content=content, used_model=model, attempts=attempts)

        raise AggregatedGatewayFailure(last_error, attempts)

    async def _complete(
        self,
        model: ResolvedModel,
        messages: list[dict[str, str]],
        system_prompt: str,
    ) -> str:
        """Make one chat-completion call.

        Raises:
            UpstreamError: For any failure of this endpoint.
        """
        payload = build_payload(
            model.model_name,
            messages,
            system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        body = await self._request(
            "POST",
            chat_completions_url(model.base_url),
            model.credential,
            model.timeout_seconds,
            json=payload,
        )
        return extract_content(body)

    async def _request(
        self,
        method: str,
        url: str,
        credential: str,
        timeout_seconds: float,
        *,
        json: dict[str, Any] | None = None,
    ) -> Any:
        # httpx applies its timeout per connect/read/write step; wait_for bounds the whole call.
        try:
            response = await asyncio.wait_for(
                self._http_client.request(
                    method,
                    url,
                    json=json,
                    headers=build_headers(credential),
                    timeout=timeout_seconds,
                ),
                timeout_seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise UpstreamTimeout(
                message=f"Request timeout after {timeout_seconds}s: {e}",
                code="upstream_timeout",
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(
                message=f"Connection error: {e}",
                code="upstream_unavailable",
            ) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"error": response.text or "Unknown error"}
            if not isinstance(body, dict):
                body = {"error": str(body)}
            raise map_status_to_error(response.status_code, body, dict(response.headers))

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamBadResponse(
                message="Provider returned a non-JSON body",
                code="upstream_bad_response",
                status=response.status_code,
            ) from e

    async def test_connection(self, model: ResolvedModel) -> ConnectionCheck:
        """Send a minimal prompt to one model and report latency or the error."""
        start = time.monotonic()
        try:
            await self._complete(
                model,
                [{"role": "user", "content": "Hello"}],
                "You are a helpful assistant.",
            )
        except UpstreamError as e:
            return ConnectionCheck(success=False, error=str(e))
        return ConnectionCheck(success=True, latency_ms=int((time.monotonic() - start) * 1000))

    async def list_models(self, base_url: str, credential: str, timeout_seconds: float = 30) -> list[str]:
        """List model ids advertised at {base_url}/models."""
        body = await self._request("GET", models_url(base_url), credential, timeout_seconds)
        return extract_model_ids(body)
