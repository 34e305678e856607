from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict

class LLMProvider(ABC):
    @abstractmethod
    def chat(self, payload: Dict[str, Any], *, timeout: float) -> Dict[str, Any]:
        """
        Send one chat-completions request and return the decoded JSON reply.

        `payload` already carries model, messages, functions and sampling
        parameters; the provider only adds transport concerns (auth, URL).
        Transport failures and non-2xx replies raise ExternalServiceError.
        """
        raise NotImplementedError
