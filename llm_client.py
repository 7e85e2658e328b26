"""
The engine's boundary to the language model.

The orchestrator only knows the LLMClient interface: a list of role-tagged
messages goes in, an LLMResponse comes out. Clients never raise for upstream
problems; a failed call is an LLMResponse with success=False and an error.

GeminiClient is the production implementation, built on google-genai.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from google import genai
from google.genai import types

import config
from data_models import LLMMessage, LLMResponse, TokenUsage
from tracer import trace


class LLMClient(ABC):
    @abstractmethod
    def send(self, messages: list[LLMMessage]) -> LLMResponse:
        """Sends a rendered context to the model and returns its reply."""


def to_gemini_contents(messages: list[LLMMessage]) -> tuple[Optional[str], list[types.Content]]:
    """
    Splits role-tagged messages into a system instruction and Gemini contents.

    System messages are concatenated into the system instruction; assistant
    turns map to Gemini's 'model' role.
    """
    system_parts = []
    contents = []
    for message in messages:
        if message.role == "system":
            system_parts.append(message.content)
            continue
        role = "model" if message.role == "assistant" else "user"
        contents.append(types.Content(role=role, parts=[types.Part.from_text(text=message.content)]))
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return system_instruction, contents


def _usage_from(raw) -> TokenUsage:
    meta = getattr(raw, "usage_metadata", None)
    if meta is None:
        return TokenUsage()
    prompt = getattr(meta, "prompt_token_count", 0) or 0
    completion = getattr(meta, "candidates_token_count", 0) or 0
    total = getattr(meta, "total_token_count", 0) or prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class GeminiClient(LLMClient):
    """LLMClient backed by the Gemini API."""

    def __init__(
        self,
        model: str = config.MODEL_NAME,
        api_key: Optional[str] = config.GEMINI_API_KEY,
        timeout_seconds: float = config.MODEL_TIMEOUT_SECONDS,
        temperature: Optional[float] = None,
    ):
        self.model = model
        self.temperature = temperature
        self._client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
        )

    @trace
    def send(self, messages: list[LLMMessage]) -> LLMResponse:
        system_instruction, contents = to_gemini_contents(messages)
        if not contents:
            return LLMResponse.fail("There is nothing to send to the model.", model=self.model)

        config_kwargs = {}
        if system_instruction is not None:
            config_kwargs["system_instruction"] = system_instruction
        if self.temperature is not None:
            config_kwargs["temperature"] = self.temperature

        try:
            raw = self._client.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(**config_kwargs) if config_kwargs else None,
            )
        except Exception as e:
            logging.error(f"Gemini call to '{self.model}' failed: {e}")
            return LLMResponse.fail(f"Model call failed: {e}", model=self.model)

        text = raw.text or ""
        if not text.strip():
            return LLMResponse.fail("The model returned an empty response.", model=self.model)
        return LLMResponse(success=True, content=text, model=self.model, usage=_usage_from(raw))
