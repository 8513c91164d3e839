from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from app.core.config import get_settings
from app.core.errors import ExternalServiceError


logger = logging.getLogger("app.outreach")


class GenerationError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GenerationClient(Protocol):
    async def generate_text(self, prompt: str) -> str: ...


class GeminiClient:
    def __init__(self, api_key: str, model: str, base_url: str, timeout: float = 60.0) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def generate_text(self, prompt: str) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, params={"key": self.api_key}, json=body)
        except httpx.HTTPError as exc:
            raise GenerationError(f"generation request failed: {exc}") from exc

        if response.status_code >= 400:
            raise GenerationError(
                f"generation API error {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return self._extract_text(response.json())

    def _extract_text(self, data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            raise GenerationError("generation API returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise GenerationError("generation API returned an empty response")
        return text


_client_override: GenerationClient | None = None


def get_generation_client() -> GenerationClient:
    if _client_override is not None:
        return _client_override
    settings = get_settings()
    if not settings.gemini_api_key:
        logger.error("outreach.client_not_configured")
        raise ExternalServiceError("AI service not configured. Please contact support.")
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.generation_timeout_seconds,
    )


def set_generation_client(client: GenerationClient | None) -> None:
    global _client_override
    _client_override = client
