from typing import Dict, Any, List, Optional, Set, AsyncIterator, Callable, Awaitable
import asyncio
import time
import httpx
import structlog

from dynamics_agent.domain.errors import ConfigurationError, ModelProviderError
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

RATE_LIMITED = 429
OVERLOADED = 529


class ModelClient:
    """HTTP client for the Anthropic Messages API"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.settings = settings or get_settings()
        self.api_url = self.settings.anthropic_api_url
        self.model = self.settings.model
        self.fallback_model = self.settings.fallback_model
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.model_timeout_seconds, connect=10.0),
            transport=transport
        )

    async def aclose(self):
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        if not self.settings.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not configured")
        return {
            "content-type": "application/json",
            "x-api-key": self.settings.anthropic_api_key,
            "anthropic-version": self.settings.anthropic_version,
        }

    def _build_body(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        stream: bool,
        max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        body = {
            "model": self.model,
            "max_tokens": max_tokens or self.settings.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            body["tools"] = tools
        if stream:
            body["stream"] = True
        return body

    def _retry_after_seconds(self, header: Optional[str]) -> float:
        wait = float(self.settings.rate_limit_default_wait_seconds)
        if header:
            try:
                wait = float(header)
            except ValueError:
                pass
        return max(0.0, min(wait, float(self.settings.rate_limit_max_wait_seconds)))

    async def _recover(
        self,
        status: int,
        retry_after: Optional[str],
        body: Dict[str, Any],
        attempts: Set[str]
    ) -> Optional[Dict[str, Any]]:
        """Return the body to retry with, or None when the failure is final"""

        if status == RATE_LIMITED and "rate_limit" not in attempts:
            attempts.add("rate_limit")
            wait = self._retry_after_seconds(retry_after)
            logger.warning("Rate limited by model provider, retrying", wait_seconds=wait, model=body["model"])
            metrics.increment_counter("model.rate_limited")
            await self._sleep(wait)
            return body

        if (
            status == OVERLOADED
            and "fallback" not in attempts
            and self.fallback_model
            and self.fallback_model != body["model"]
        ):
            attempts.add("fallback")
            logger.warning("Model overloaded, retrying with fallback", model=body["model"], fallback=self.fallback_model)
            metrics.increment_counter("model.fallback")
            return {**body, "model": self.fallback_model}

        return None

    async def stream_message(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[bytes]:
        """Stream a model response as raw server-sent event bytes"""

        body = self._build_body(system, messages, tools, stream=True)
        headers = self._headers()
        attempts: Set[str] = set()
        started = time.monotonic()

        while True:
            async with self._client.stream("POST", self.api_url, json=body, headers=headers) as response:
                if response.is_success:
                    async for chunk in response.aiter_bytes():
                        yield chunk
                    metrics.record_latency("model.stream", (time.monotonic() - started) * 1000)
                    return
                status = response.status_code
                retry_after = response.headers.get("retry-after")
                error_body = (await response.aread()).decode("utf-8", errors="replace")

            retry_body = await self._recover(status, retry_after, body, attempts)
            if retry_body is None:
                raise ModelProviderError(f"Claude API error ({status}): {error_body}", status_code=status)
            body = retry_body

    async def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        """Run a single non-streaming completion"""

        body = self._build_body(system, messages, None, stream=False, max_tokens=max_tokens)
        headers = self._headers()
        attempts: Set[str] = set()
        started = time.monotonic()

        while True:
            response = await self._client.post(self.api_url, json=body, headers=headers)
            if response.is_success:
                metrics.record_latency("model.complete", (time.monotonic() - started) * 1000)
                return response.json()

            retry_body = await self._recover(
                response.status_code, response.headers.get("retry-after"), body, attempts
            )
            if retry_body is None:
                raise ModelProviderError(
                    f"Claude API error ({response.status_code}): {response.text}",
                    status_code=response.status_code
                )
            body = retry_body


def response_text(response: Dict[str, Any]) -> str:
    """Concatenate the text blocks of a non-streaming response"""
    return "".join(
        block.get("text", "")
        for block in response.get("content") or []
        if block.get("type") == "text"
    )
