"""
AI Service Client
=================

Thin async client for the AI text service (Anthropic Messages API).

Used by the feedback resolver to map reviewer text onto fixes and to
draft amended rewrites. Transport errors, 429 and 5xx responses are
retried with exponential backoff via tenacity; everything else fails
immediately.
"""

import json
import logging
import re
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docval.core.config import settings
from docval.core.validation.errors import AIServiceError

logger = structlog.get_logger()
_stdlib_logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


class _RetryableAIError(AIServiceError):
    """A failure worth another attempt."""


class AIServiceClient:
    """Client for the AI text service."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = (api_url or settings.AI_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AI_API_KEY
        self.model = model or settings.AI_MODEL
        self.max_retries = settings.AI_MAX_RETRIES
        self.backoff_seconds = settings.AI_RETRY_BACKOFF_SECONDS
        self._client = http_client or httpx.AsyncClient(timeout=settings.AI_TIMEOUT_SECONDS)

        logger.info("ai_client_initialized", api_url=self.api_url, model=self.model, enabled=self.enabled)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def complete(self, system: str, prompt: str, max_tokens: Optional[int] = None) -> str:
        """
        Send one prompt and return the text of the reply.

        Raises:
            AIServiceError: Not configured, retries exhausted, or a
                non-retryable error response
        """
        if not self.enabled:
            raise AIServiceError("AI service is not configured (AI_API_KEY unset)")

        payload = {
            "model": self.model,
            "max_tokens": max_tokens or settings.AI_MAX_TOKENS,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        async for attempt in self._retry_policy():
            with attempt:
                response = await self._post(payload, headers)
        return self._text_of(response.json())

    def _retry_policy(self) -> AsyncRetrying:
        """Retry transport errors, 429 and 5xx with exponential backoff."""
        return AsyncRetrying(
            retry=retry_if_exception_type(_RetryableAIError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            before_sleep=before_sleep_log(_stdlib_logger, logging.WARNING),
            reraise=True,
        )

    async def _post(self, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        try:
            response = await self._client.post(
                f"{self.api_url}/v1/messages",
                json=payload,
                headers=headers,
            )
        except httpx.TransportError as e:
            logger.warning("ai_request_transport_error", error=str(e))
            raise _RetryableAIError(f"AI service unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("ai_request_retryable", status_code=response.status_code)
            raise _RetryableAIError(
                f"AI service returned {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code != 200:
            raise AIServiceError(
                f"AI service returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def complete_json(self, system: str, prompt: str) -> dict[str, Any]:
        """Like complete(), but parse the first JSON object in the reply."""
        text = await self.complete(system, prompt)
        match = _JSON_BLOCK.search(text)
        if not match:
            raise AIServiceError("AI reply contained no JSON object")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise AIServiceError(f"AI reply was not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise AIServiceError("AI reply JSON was not an object")
        return parsed

    @staticmethod
    def _text_of(body: dict[str, Any]) -> str:
        blocks = body.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        if not text:
            raise AIServiceError("AI reply had no text content")
        return text
