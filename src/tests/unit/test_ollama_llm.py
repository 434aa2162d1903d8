"""
Unit Tests for the Ollama LLM Client

Uses httpx.MockTransport in place of a running Ollama server.
"""

import json

import httpx
import pytest

from src.retrieval.ollama_llm import OllamaLLM


def build_llm(handler, **kwargs):
    return OllamaLLM(
        model_name="mistral:7b",
        base_url="http://ollama.test:11434/",
        transport=httpx.MockTransport(handler),
        **kwargs
    )


class TestAsyncCompletion:
    """Tests for acomplete."""

    @pytest.mark.asyncio
    async def test_posts_generate_request(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"response": '["frappe hooks"]', "done": True})

        llm = build_llm(handler, temperature=0.2, num_output=256)
        response = await llm.acomplete("List hooks", temperature=0.1, max_tokens=1000)

        assert response.text == '["frappe hooks"]'
        assert str(requests[0].url) == "http://ollama.test:11434/api/generate"
        payload = json.loads(requests[0].content)
        assert payload["model"] == "mistral:7b"
        assert payload["prompt"] == "List hooks"
        assert payload["stream"] is False
        assert payload["options"] == {"temperature": 0.1, "num_predict": 1000}

    @pytest.mark.asyncio
    async def test_defaults_used_without_overrides(self):
        payloads = []

        def handler(request):
            payloads.append(json.loads(request.content))
            return httpx.Response(200, json={"response": "ok"})

        llm = build_llm(handler, temperature=0.2, num_output=256)
        await llm.acomplete("hello")

        assert payloads[0]["options"] == {"temperature": 0.2, "num_predict": 256}

    @pytest.mark.asyncio
    async def test_http_error_raised(self):
        llm = build_llm(lambda request: httpx.Response(500, json={"error": "model not loaded"}))

        with pytest.raises(httpx.HTTPStatusError):
            await llm.acomplete("hello")


class TestMetadata:
    """Tests for the LlamaIndex metadata."""

    def test_metadata(self):
        llm = build_llm(lambda request: httpx.Response(200, json={}), context_window=8192, num_output=128)

        assert llm.metadata.model_name == "mistral:7b"
        assert llm.metadata.context_window == 8192
        assert llm.metadata.num_output == 128
        llm.close()
