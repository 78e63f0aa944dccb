"""Concrete implementations for LLM providers."""

import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import LLMUnavailableError


class LLM(ABC):
    """Abstract Base Class for all LLM providers."""

    model: Optional[str] = None

    @abstractmethod
    async def generate_response(
        self, messages: List[Dict[str, Any]], model: Optional[str] = None, **kwargs: Any
    ) -> Any:
        """Generates a response from the LLM provider.

        This method should return the provider's native, rich response object
        directly from their SDK.

        Parameters
        ----------
        messages : List[Dict[str, Any]]
            An ordered list of ``{"role": ..., "content": ...}`` dictionaries.
            The first entry may be a system prompt.
        model : str, optional
            The specific model to use for the generation. Defaults to the
            provider's configured model.
        **kwargs : Any
            Provider-specific parameters (e.g., max_tokens, temperature) to be
            passed directly to the SDK.

        Returns
        -------
        Any
            The provider's native, rich response object.

        Raises
        ------
        LLMUnavailableError
            If the provider is not configured.
        """
        pass

    @abstractmethod
    def extract_content(self, response: Any) -> str:
        """Extracts the text content from the provider's native response object.

        Parameters
        ----------
        response : Any
            The provider's native response object from generate_response.

        Returns
        -------
        str
            The extracted text content from the response.
        """
        pass

    def is_available(self) -> bool:
        """Whether the provider is configured well enough to be called."""
        return True


class OpenAI(LLM):
    def __init__(self, default_model: str = "gpt-4o-mini", api_key: Optional[str] = None):
        from openai import AsyncOpenAI

        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.client = AsyncOpenAI(api_key=self.api_key) if self.api_key else None
        self.model = default_model

    def is_available(self) -> bool:
        return self.client is not None

    async def generate_response(self, messages, model=None, **kwargs):
        if self.client is None:
            raise LLMUnavailableError("OpenAI API key not configured")
        return await self.client.chat.completions.create(
            messages=messages, model=model or self.model, **kwargs
        )

    def extract_content(self, response: Any) -> str:
        return response.choices[0].message.content or ""


class Anthropic(LLM):
    def __init__(
        self,
        default_model: str = "claude-3-5-haiku-latest",
        api_key: Optional[str] = None,
    ):
        from anthropic import AsyncAnthropic

        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.client = AsyncAnthropic(api_key=self.api_key) if self.api_key else None
        self.model = default_model

    def is_available(self) -> bool:
        return self.client is not None

    async def generate_response(self, messages, model=None, **kwargs):
        if self.client is None:
            raise LLMUnavailableError("Anthropic API key not configured")
        if "max_tokens" not in kwargs:
            kwargs["max_tokens"] = 1024
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        chat = [m for m in messages if m["role"] != "system"]
        if system:
            kwargs["system"] = system
        return await self.client.messages.create(
            model=model or self.model, messages=chat, **kwargs
        )

    def extract_content(self, response: Any) -> str:
        return response.content[0].text


class Ollama(LLM):
    def __init__(self, default_model: str = "llama3.1", host: Optional[str] = None):
        from ollama import AsyncClient

        self.client = AsyncClient(host=host)
        self.model = default_model

    async def generate_response(self, messages, model=None, **kwargs):
        options = {}
        if "temperature" in kwargs:
            options["temperature"] = kwargs.pop("temperature")
        if "max_tokens" in kwargs:
            options["num_predict"] = kwargs.pop("max_tokens")
        return await self.client.chat(
            model=model or self.model, messages=messages, options=options, **kwargs
        )

    def extract_content(self, response: Any) -> str:
        return response["message"]["content"]


class Scripted(LLM):
    """Replays canned responses in order. For tests and offline demos."""

    def __init__(self, responses: Sequence[str] = (), default_model: str = "scripted-v1"):
        self.responses = list(responses)
        self.model = default_model
        self.calls: List[List[Dict[str, Any]]] = []

    async def generate_response(self, messages, model=None, **kwargs):
        self.calls.append(messages)
        if not self.responses:
            raise LLMUnavailableError("No scripted responses left")
        return {"content": self.responses.pop(0)}

    def extract_content(self, response: Any) -> str:
        if isinstance(response, dict) and "content" in response:
            return response["content"]
        return str(response)


class NoLLM(LLM):
    """Default provider when no language model is configured. Never available."""

    async def generate_response(self, messages, model=None, **kwargs):
        raise LLMUnavailableError("No language model configured")

    def extract_content(self, response: Any) -> str:
        return ""

    def is_available(self) -> bool:
        return False
