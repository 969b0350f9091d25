"""
Model-call collaborator.

The engine treats the language model as an opaque, unreliable function:
prompt text in, completion text and usage counters out. ModelClient is
that contract; HTTPModelClient talks to an OpenAI-compatible chat
completions endpoint.
"""

import os
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .config import ModelConfig
from .errors import ModelCallError
from .prompts import SYSTEM_PROMPTS
from .types import InstructionKind, ModelResult


class ModelClient(ABC):
    """
    Abstract base class for model-call backends.

    Implementations:
    - HTTPModelClient: OpenAI-compatible HTTP API
    - test doubles that return scripted completions
    """

    @abstractmethod
    async def invoke(self, prompt_text: str, instruction_kind: InstructionKind) -> ModelResult:
        """
        Run one completion.

        Args:
            prompt_text: User prompt
            instruction_kind: Selects the system instruction

        Returns:
            ModelResult with completion text and usage

        Raises:
            ModelCallError: on any failure
        """
        pass

    async def aclose(self) -> None:
        pass


class HTTPModelClient(ModelClient):
    """
    Calls a chat completions API with httpx.

    The API key is read from the environment variable named in the
    config, so config files never hold secrets.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        temperature: float = 0.3,
        max_tokens: int = 700,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: ModelConfig) -> "HTTPModelClient":
        return cls(
            api_key=os.getenv(config.api_key_env, ""),
            base_url=config.base_url,
            model=config.model,
            timeout=config.timeout_seconds,
            temperature=config.temperature,
            max_tokens=config.max_output_tokens,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def invoke(self, prompt_text: str, instruction_kind: InstructionKind) -> ModelResult:
        if not self.api_key:
            raise ModelCallError("No API key configured for the model client")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPTS[InstructionKind(instruction_kind)]},
                {"role": "user", "content": prompt_text},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        try:
            response = await self.client.post(
                f"{self.base_url}/v1/chat/completions",
                headers=headers,
                json=payload,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ModelCallError(f"Model call failed: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            raise ModelCallError("Model returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content.strip():
            raise ModelCallError("Model returned an empty completion")

        usage = {k: int(v) for k, v in (data.get("usage") or {}).items() if isinstance(v, int)}
        return ModelResult(completion_text=content, usage=usage)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
