import pytest

from llm.llm_client import LLMClient, get_provider
from llm.providers.mock_provider import MockProvider
from llm.schemas import SCHEDULE_FUNCTION_SCHEMA
from smart_schedule.config import Settings


def test_call_function_decodes_arguments(fake_provider_factory):
    provider = fake_provider_factory('{"date": "2024-01-15", "schedule_slots": []}')
    client = LLMClient(provider=provider, settings=Settings())
    result = client.call_function(system="s", user="u", function_schema=SCHEDULE_FUNCTION_SCHEMA)
    assert result.arguments["date"] == "2024-01-15"
    assert result.model == "fake-model"
    assert result.prompt_tokens == 1000
    assert result.latency_ms >= 0


def test_payload_forces_the_function():
    client = LLMClient(provider=MockProvider(), settings=Settings(llm_temperature=0.2, llm_max_tokens=500))
    payload = client.build_payload(system="s", user="u", function_schema=SCHEDULE_FUNCTION_SCHEMA)
    assert payload["functions"] == [SCHEDULE_FUNCTION_SCHEMA]
    assert payload["function_call"] == {"name": "generate_optimized_schedule"}
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 500
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


def test_get_provider():
    assert isinstance(get_provider(Settings(llm_provider="mock")), MockProvider)
    with pytest.raises(ValueError):
        get_provider(Settings(llm_provider="carrier-pigeon"))


def test_openai_provider_requires_key():
    with pytest.raises(RuntimeError):
        get_provider(Settings(llm_provider="openai", openai_api_key=""))
