import json

import pytest

from storage.memory_repository import InMemoryRepository


class FakeProvider:
    def __init__(self, arguments, usage=None):
        self._arguments = arguments
        self._usage = usage or {"prompt_tokens": 1000, "completion_tokens": 1000, "total_tokens": 2000}
        self.payloads = []

    def chat(self, payload, *, timeout):
        self.payloads.append(payload)
        arguments = self._arguments if isinstance(self._arguments, str) else json.dumps(self._arguments)
        return {
            "model": "fake-model",
            "choices": [{"message": {"function_call": {"name": "generate_optimized_schedule", "arguments": arguments}}}],
            "usage": self._usage,
        }


@pytest.fixture
def fake_provider_factory():
    def _make(arguments, usage=None):
        return FakeProvider(arguments, usage)
    return _make


@pytest.fixture
def repo():
    return InMemoryRepository()
