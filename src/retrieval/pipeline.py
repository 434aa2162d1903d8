"""
RAG Pipeline Orchestrator

This module provides the main RAG pipeline that wires all components:
- Query expansion and decomposition
- Multi-strategy retrieval from Qdrant
- Result ranking
- Iterative refinement
- Answer generation via Ollama

Every component is built once here and passed to the components that
need it. Callers may inject their own LLM and vector store.
"""

import asyncio
from typing import Any, Dict, List, Optional

from loguru import logger

from . import config
from .models import ChatAnswer, ChatMessage, SearchOptions, SearchResponse, SourceCitation
from .multi_query import MultiStrategyRetriever
from .ollama_llm import OllamaLLM
from .query_decomposer import QueryDecomposer
from .query_expander import QueryExpander
from .ranking import RankingConfig, ResultRanker
from .refinement import GapAnalyzer, IterativeRefinementController
from .search_engine import FrappeDocsSearchEngine

# Search settings used when answering a chat question
CHAT_SEARCH_OPTIONS = SearchOptions(
    limit=8,
    threshold=0.3,
    enable_iterative_refinement=True,
    max_iterations=2,
    confidence_threshold=0.7
)

SOURCE_PREVIEW_CHARS = 200

ANSWER_GUIDELINES = """You are a helpful AI assistant that answers questions based on the provided documentation context.

Use the following context to answer the user's question. If the context doesn't contain enough information to answer the question, say so clearly.

Context:
{context}

Guidelines:
- Always base your answers on the provided context
- If you're unsure or the context doesn't contain the information, be honest about it
- Provide specific references to the documentation when possible
- Be concise but comprehensive in your responses
- If the user asks about something not in the context, suggest they might need to check other documentation or resources
"""


class FrappeDocsRAGPipeline:
    """
    Main RAG pipeline orchestrator for the Frappe docs assistant.

    Handles the complete query workflow from search to answer generation.
    """

    def __init__(
        self,
        llm: Optional[OllamaLLM] = None,
        vector_store=None,
        ranking_config: Optional[RankingConfig] = None,
        qdrant_host: str = config.QDRANT_HOST,
        qdrant_port: int = config.QDRANT_PORT,
        collection_name: str = config.QDRANT_COLLECTION,
        ollama_url: str = config.OLLAMA_URL,
        llm_model: str = config.LLM_MODEL,
        embedding_model: str = config.EMBEDDING_MODEL,
        search_timeout: float = config.SEARCH_TIMEOUT_SECONDS
    ):
        """
        Initialize RAG pipeline with all components.

        Args:
            llm: Pre-built LLM (default: OllamaLLM for llm_model)
            vector_store: Pre-built vector store (default: Qdrant + BGE)
            ranking_config: Default ranking weights and boosts
            qdrant_host: Qdrant server hostname
            qdrant_port: Qdrant server port
            collection_name: Qdrant collection name
            ollama_url: Ollama API URL
            llm_model: Ollama model name
            embedding_model: HuggingFace embedding model name
            search_timeout: Per-search timeout in seconds
        """
        logger.info("Initializing Frappe Docs RAG Pipeline")

        self.llm = llm or OllamaLLM(model_name=llm_model, base_url=ollama_url)

        if vector_store is None:
            from .embeddings import BGEEmbeddings
            from .vector_store import FrappeDocsVectorStore

            vector_store = FrappeDocsVectorStore(
                embeddings=BGEEmbeddings(model_name=embedding_model),
                host=qdrant_host,
                port=qdrant_port,
                collection_name=collection_name
            )
        self.vector_store = vector_store

        self.query_expander = QueryExpander(llm=self.llm)
        self.query_decomposer = QueryDecomposer(llm=self.llm)
        self.retriever = MultiStrategyRetriever(
            vector_store=self.vector_store,
            query_expander=self.query_expander,
            query_decomposer=self.query_decomposer,
            search_timeout=search_timeout
        )
        self.ranker = ResultRanker(config=ranking_config)
        self.refinement_controller = IterativeRefinementController(
            llm=self.llm,
            gap_analyzer=GapAnalyzer(self.llm)
        )
        self.search_engine = FrappeDocsSearchEngine(
            retriever=self.retriever,
            ranker=self.ranker,
            refinement_controller=self.refinement_controller,
            vector_store=self.vector_store
        )

        logger.info("RAG Pipeline initialized")

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> SearchResponse:
        """Run the multi-stage documentation search."""
        return await self.search_engine.search(query, options, cancel_event)

    @staticmethod
    def build_context(results) -> str:
        return "\n\n".join(
            f"Document {index + 1} ({result.title}):\n{result.content}\n---"
            for index, result in enumerate(results)
        )

    @staticmethod
    def build_prompt(question: str, context: str, history: Optional[List[ChatMessage]] = None) -> str:
        """
        Assemble the answer prompt.

        System messages in the history are skipped; user and assistant
        turns are replayed in order before the question.
        """
        parts = [ANSWER_GUIDELINES.format(context=context)]
        for message in history or []:
            if message.role == "user":
                parts.append(f"User: {message.content}")
            elif message.role == "assistant":
                parts.append(f"Assistant: {message.content}")
        parts.append(f"User: {question}")
        parts.append("Assistant:")
        return "\n\n".join(parts)

    async def query(
        self,
        question: str,
        history: Optional[List[ChatMessage]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> ChatAnswer:
        """
        Answer a question from the documentation.

        Args:
            question: User's question
            history: Prior conversation turns (not stored)
            cancel_event: Forwarded to the search

        Returns:
            ChatAnswer: answer text, cited sources and search diagnostics

        Raises:
            Exception: answer generation failures propagate to the caller
        """
        logger.info(f"Processing query: {question[:100]}...")

        search_response = await self.search(question, CHAT_SEARCH_OPTIONS, cancel_event)
        documents = search_response.results

        prompt = self.build_prompt(question, self.build_context(documents), history)
        response = await self.llm.acomplete(prompt)
        answer = str(response.text).strip()

        sources = [
            SourceCitation(
                id=doc.id,
                title=doc.title,
                content=doc.content[:SOURCE_PREVIEW_CHARS] + ("..." if len(doc.content) > SOURCE_PREVIEW_CHARS else ""),
                similarity=doc.similarity,
                source_url=doc.source_url,
                ranking_score=doc.ranking_score,
                search_strategy=doc.search_strategy
            )
            for doc in documents
        ]

        logger.info(f"Answer generated with {len(sources)} sources")
        return ChatAnswer(answer=answer, sources=sources, search_metadata=search_response.metadata)

    async def get_stats(self) -> Dict[str, Any]:
        """
        Get pipeline statistics.

        Returns:
            dict: Statistics about the pipeline
        """
        try:
            stats = await self.vector_store.get_collection_stats()
            stats["vector_dimension"] = config.EMBEDDING_DIMENSION
            return stats
        except Exception as e:
            logger.error(f"Error getting stats: {e}")
            return {"error": str(e)}

    async def close(self) -> None:
        """Release the vector store and LLM connections."""
        await self.vector_store.close()
        self.llm.close()
