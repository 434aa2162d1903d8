"""
BGE-Large Embeddings Module

Query embedding for vector search using BGE-large-en-v1.5. BGE (BAAI
General Embedding) is optimized for retrieval tasks and provides
1024-dimensional embeddings. The retrieval pipeline treats this as a
black box: text in, vector out.
"""

from typing import List

from loguru import logger

from . import config


class BGEEmbeddings:
    """
    BGE-Large Embeddings wrapper for LlamaIndex.

    The HuggingFace model is loaded in the constructor (the first run
    downloads ~1.3GB), so build one instance per process and share it.
    """

    def __init__(
        self,
        model_name: str = config.EMBEDDING_MODEL,
        device: str = config.EMBEDDING_DEVICE
    ):
        """
        Initialize BGE embeddings model.

        Args:
            model_name: HuggingFace model identifier for BGE-large
            device: Torch device ("cpu" or "cuda")
        """
        # Imported here: pulls in torch / sentence-transformers
        from llama_index.embeddings.huggingface import HuggingFaceEmbedding

        self.model_name = model_name
        logger.info(f"Initializing BGE embeddings model: {model_name}")

        self.embed_model = HuggingFaceEmbedding(
            model_name=model_name,
            device=device,
            trust_remote_code=True
        )

        logger.info("BGE embeddings model initialized successfully")

    async def aembed_query(self, text: str) -> List[float]:
        """
        Embed a search query.

        Args:
            text: Query text

        Returns:
            List[float]: Query embedding vector
        """
        return await self.embed_model.aget_query_embedding(text)
