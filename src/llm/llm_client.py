import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from llm.providers.base import LLMProvider
from smart_schedule.config import Settings
from smart_schedule.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def get_provider(settings: Optional[Settings] = None) -> LLMProvider:
    settings = settings or Settings.from_env()
    if settings.llm_provider == "openai":
        from llm.providers.openai_provider import OpenAIProvider

        return OpenAIProvider(settings)
    if settings.llm_provider == "mock":
        from llm.providers.mock_provider import MockProvider

        return MockProvider()
    raise ValueError(f"Unknown LLM_PROVIDER: {settings.llm_provider}")


@dataclass
class FunctionCallResult:
    arguments: Dict[str, Any]
    model: str
    latency_ms: float
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def prompt_tokens(self) -> int:
        return int(self.usage.get("prompt_tokens") or 0)

    @property
    def completion_tokens(self) -> int:
        return int(self.usage.get("completion_tokens") or 0)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens") or self.prompt_tokens + self.completion_tokens)


class LLMClient:
    """Provider-agnostic function-calling client.

    Builds the chat-completions payload, forces the named function and
    decodes `choices[0].message.function_call.arguments`. Anything that does
    not decode to a JSON object is an ExternalServiceError.
    """

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.provider = provider or get_provider(self.settings)

    @property
    def model(self) -> str:
        return self.settings.openai_model

    @property
    def timeout_s(self) -> float:
        return self.settings.llm_timeout_s

    def build_payload(self, *, system: str, user: str, function_schema: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "functions": [function_schema],
            "function_call": {"name": function_schema["name"]},
            "temperature": self.settings.llm_temperature,
            "max_tokens": self.settings.llm_max_tokens,
        }

    def call_function(
        self,
        *,
        system: str,
        user: str,
        function_schema: Dict[str, Any],
    ) -> FunctionCallResult:
        payload = self.build_payload(system=system, user=user, function_schema=function_schema)

        started = time.perf_counter()
        data = self.provider.chat(payload, timeout=self.timeout_s)
        latency_ms = (time.perf_counter() - started) * 1000

        try:
            function_call = data["choices"][0]["message"]["function_call"]
            raw_args = function_call["arguments"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("Invalid AI response format: no function_call") from e

        if isinstance(raw_args, str):
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError as e:
                raise ExternalServiceError("Failed to parse AI response JSON") from e
        else:
            arguments = raw_args

        if not isinstance(arguments, dict):
            raise ExternalServiceError("AI function arguments are not a JSON object")

        logger.info(
            "LLM call %s finished in %.0f ms (%s tokens)",
            function_schema["name"],
            latency_ms,
            (data.get("usage") or {}).get("total_tokens", "?"),
        )
        return FunctionCallResult(
            arguments=arguments,
            model=data.get("model") or self.model,
            latency_ms=latency_ms,
            usage=data.get("usage") or {},
        )
