"""
Ollama LLM Integration

This module provides integration with Ollama for LLM inference.
It is the single language-model collaborator of the retrieval pipeline:
query expansion, decomposition, gap analysis, follow-up generation and
answer generation all go through OllamaLLM.

The retrieval stages run under asyncio, so acomplete() is the primary
entry point. complete() and stream_complete() remain for scripts and for
LlamaIndex components that expect a synchronous LLM.
"""

import json
from typing import Any, Dict, Optional

import httpx
from llama_index.core.llms import (
    CompletionResponse,
    CompletionResponseGen,
    CustomLLM,
    LLMMetadata,
)
from loguru import logger
from pydantic import PrivateAttr

from . import config


class OllamaLLM(CustomLLM):
    """
    Custom LLM wrapper for the Ollama /api/generate endpoint.

    Per-call temperature and max_tokens override the instance defaults,
    so one client can serve both low-temperature JSON prompts and
    free-form answer generation.
    """

    _model_name: str = PrivateAttr()
    _base_url: str = PrivateAttr()
    _temperature: float = PrivateAttr()
    _context_window: int = PrivateAttr()
    _num_output: int = PrivateAttr()
    _timeout: float = PrivateAttr()
    _transport: Optional[httpx.AsyncBaseTransport] = PrivateAttr(default=None)
    _client: httpx.Client = PrivateAttr()

    def __init__(
        self,
        model_name: str = config.LLM_MODEL,
        base_url: str = config.OLLAMA_URL,
        temperature: float = config.LLM_TEMPERATURE,
        context_window: int = 4096,
        num_output: int = 512,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any
    ):
        """
        Initialize Ollama LLM.

        Args:
            model_name: Ollama model name (default: mistral:7b)
            base_url: Ollama API base URL
            temperature: Default sampling temperature
            context_window: Maximum context window size
            num_output: Default maximum tokens to generate
            timeout: HTTP timeout in seconds
            transport: Optional async httpx transport (used by tests)
        """
        super().__init__(**kwargs)

        self._model_name = model_name
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._context_window = context_window
        self._num_output = num_output
        self._timeout = timeout
        self._transport = transport
        self._client = httpx.Client(timeout=timeout)

        logger.info(f"Initialized Ollama LLM: {model_name} at {self._base_url}")

    @property
    def metadata(self) -> LLMMetadata:
        """Return LLM metadata."""
        return LLMMetadata(
            context_window=self._context_window,
            num_output=self._num_output,
            model_name=self._model_name
        )

    def _build_payload(self, prompt: str, stream: bool, **kwargs: Any) -> Dict[str, Any]:
        return {
            "model": self._model_name,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": kwargs.get("temperature", self._temperature),
                "num_predict": kwargs.get("max_tokens", self._num_output)
            }
        }

    def complete(
        self,
        prompt: str,
        formatted: bool = False,
        **kwargs: Any
    ) -> CompletionResponse:
        """
        Complete a prompt synchronously.

        Args:
            prompt: Input prompt text
            formatted: Whether prompt is already formatted
            **kwargs: temperature / max_tokens overrides

        Returns:
            CompletionResponse: Completion response with generated text
        """
        try:
            response = self._client.post(
                f"{self._base_url}/api/generate",
                json=self._build_payload(prompt, stream=False, **kwargs)
            )
            response.raise_for_status()
            text = response.json().get("response", "")
            logger.debug(f"Ollama completion: {len(text)} characters")
            return CompletionResponse(text=text)
        except Exception as e:
            logger.error(f"Error in Ollama completion: {e}")
            raise

    async def acomplete(
        self,
        prompt: str,
        formatted: bool = False,
        **kwargs: Any
    ) -> CompletionResponse:
        """
        Complete a prompt asynchronously.

        A fresh AsyncClient is used per call so the LLM can be shared across
        event loops (scripts, tests) without leaking connections.
        Errors are logged and re-raised; callers decide the fallback.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/api/generate",
                    json=self._build_payload(prompt, stream=False, **kwargs)
                )
                response.raise_for_status()
                text = response.json().get("response", "")
            logger.debug(f"Ollama async completion: {len(text)} characters")
            return CompletionResponse(text=text)
        except Exception as e:
            logger.error(f"Error in Ollama async completion: {e}")
            raise

    def stream_complete(
        self,
        prompt: str,
        formatted: bool = False,
        **kwargs: Any
    ) -> CompletionResponseGen:
        """
        Stream completion from Ollama.

        Yields:
            CompletionResponse: accumulated text plus the latest delta
        """
        try:
            with self._client.stream(
                "POST",
                f"{self._base_url}/api/generate",
                json=self._build_payload(prompt, stream=True, **kwargs)
            ) as response:
                response.raise_for_status()
                text = ""

                for line in response.iter_lines():
                    if not line:
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if "response" in chunk:
                        text += chunk["response"]
                        yield CompletionResponse(text=text, delta=chunk["response"])
                    if chunk.get("done", False):
                        break
        except Exception as e:
            logger.error(f"Error in Ollama streaming: {e}")
            raise

    def close(self) -> None:
        """Close the synchronous HTTP client."""
        self._client.close()
