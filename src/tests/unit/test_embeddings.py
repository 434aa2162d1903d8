"""
Unit Tests for BGE Embeddings

The HuggingFace model is replaced so no weights are downloaded.
"""

import pytest

from src.retrieval.embeddings import BGEEmbeddings

huggingface = pytest.importorskip("llama_index.embeddings.huggingface")


class StubModel:
    def __init__(self, model_name, device, trust_remote_code):
        self.model_name = model_name
        self.device = device

    async def aget_query_embedding(self, text):
        return [float(len(text))] * 4


@pytest.fixture
def embeddings(monkeypatch):
    monkeypatch.setattr(huggingface, "HuggingFaceEmbedding", StubModel)
    return BGEEmbeddings(model_name="BAAI/bge-small-en-v1.5", device="cpu")


class TestBGEEmbeddings:
    """Tests for the embedding wrapper."""

    def test_model_configuration(self, embeddings):
        model = embeddings.embed_model

        assert model.model_name == "BAAI/bge-small-en-v1.5"
        assert model.device == "cpu"

    @pytest.mark.asyncio
    async def test_embed_query(self, embeddings):
        assert await embeddings.aembed_query("doctype") == [7.0] * 4
