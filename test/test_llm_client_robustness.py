import httpx
import pytest

from llm.llm_client import LLMClient
from llm.providers import openai_provider
from llm.providers.openai_provider import OpenAIProvider
from llm.schemas import SCHEDULE_FUNCTION_SCHEMA
from smart_schedule.config import Settings
from smart_schedule.errors import ExternalServiceError


class RawProvider:
    def __init__(self, reply):
        self.reply = reply

    def chat(self, payload, *, timeout):
        return self.reply


def _call(reply):
    client = LLMClient(provider=RawProvider(reply), settings=Settings())
    return client.call_function(system="s", user="u", function_schema=SCHEDULE_FUNCTION_SCHEMA)


def test_reply_without_function_call():
    with pytest.raises(ExternalServiceError):
        _call({"choices": [{"message": {"content": "Here is your schedule!"}}]})


def test_reply_with_invalid_arguments_json(fake_provider_factory):
    client = LLMClient(provider=fake_provider_factory("INVALID OUTPUT"), settings=Settings())
    with pytest.raises(ExternalServiceError):
        client.call_function(system="s", user="u", function_schema=SCHEDULE_FUNCTION_SCHEMA)


def test_arguments_must_be_an_object(fake_provider_factory):
    client = LLMClient(provider=fake_provider_factory("[1, 2]"), settings=Settings())
    with pytest.raises(ExternalServiceError):
        client.call_function(system="s", user="u", function_schema=SCHEDULE_FUNCTION_SCHEMA)


def test_already_decoded_arguments_are_accepted():
    out = _call({"choices": [{"message": {"function_call": {"arguments": {"date": "2024-01-15"}}}}]})
    assert out.arguments == {"date": "2024-01-15"}
    assert out.total_tokens == 0


def _patch_transport(monkeypatch, handler):
    real_client = httpx.Client

    def client_factory(timeout):
        return real_client(transport=httpx.MockTransport(handler), timeout=timeout)

    monkeypatch.setattr(openai_provider.httpx, "Client", client_factory)


def test_openai_provider_http_error(monkeypatch):
    _patch_transport(monkeypatch, lambda request: httpx.Response(500, text="boom"))
    provider = OpenAIProvider(Settings(openai_api_key="sk-test"))
    with pytest.raises(ExternalServiceError) as exc:
        provider.chat({"model": "m"}, timeout=1)
    assert exc.value.detail["status_code"] == 500


def test_openai_provider_timeout(monkeypatch):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    _patch_transport(monkeypatch, handler)
    provider = OpenAIProvider(Settings(openai_api_key="sk-test"))
    with pytest.raises(ExternalServiceError) as exc:
        provider.chat({"model": "m"}, timeout=1)
    assert exc.value.detail == {"timeout_s": 1}


def test_openai_provider_posts_payload(monkeypatch):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"choices": []})

    _patch_transport(monkeypatch, handler)
    provider = OpenAIProvider(Settings(openai_api_key="sk-test", openai_base_url="https://llm.example/v1/"))
    assert provider.chat({"model": "m"}, timeout=1) == {"choices": []}
    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
