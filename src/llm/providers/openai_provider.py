from __future__ import annotations
import logging
from typing import Any, Dict

import httpx

from smart_schedule.config import Settings
from smart_schedule.errors import ExternalServiceError
from .base import LLMProvider

logger = logging.getLogger(__name__)

class OpenAIProvider(LLMProvider):
    def __init__(self, settings: Settings | None = None):
        settings = settings or Settings.from_env()
        self.api_key = settings.openai_api_key
        self.base_url = settings.openai_base_url.rstrip("/")

        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")

    def chat(self, payload: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=timeout) as client:
                r = client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(
                "LLM request timed out", {"timeout_s": timeout}
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"LLM request failed: {e}") from e

        if r.status_code < 200 or r.status_code >= 300:
            logger.error(f"OpenAI returned {r.status_code}: {r.text[:500]}")
            raise ExternalServiceError(
                "LLM request failed",
                {"status_code": r.status_code, "body": r.text[:500]},
            )

        try:
            return r.json()
        except ValueError as e:
            raise ExternalServiceError("LLM reply is not valid JSON") from e
