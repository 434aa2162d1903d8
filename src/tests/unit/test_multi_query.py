"""
Unit Tests for Multi-Strategy Retrieval

Tests deduplication, strategy weighting, strategy generation and the
concurrent multi-query search against an in-memory vector store.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from src.retrieval.models import SearchStrategy
from src.retrieval.multi_query import (
    MultiStrategyRetriever,
    SearchUnavailableError,
    deduplicate_results,
    is_troubleshooting_query,
    score_results,
)
from src.retrieval.query_decomposer import QueryDecomposer
from src.retrieval.query_expander import QueryExpander
from src.tests.fakes import (
    DECOMPOSER_FOLLOW_UP_PROMPT,
    DECOMPOSITION_PROMPT,
    FakeLLM,
    FakeVectorStore,
    make_hit,
    make_result,
)

TROUBLESHOOTING_QUERY = "How do I fix a permission error when saving a record?"
COMPARISON_QUERY = "What is a DocType and how does it differ from a DocField, and how do I configure one?"


def build_retriever(llm, vector_store, search_timeout=30):
    return MultiStrategyRetriever(
        vector_store=vector_store,
        query_expander=QueryExpander(llm),
        query_decomposer=QueryDecomposer(llm),
        search_timeout=search_timeout
    )


class TestDeduplication:
    """Tests for (filename, content prefix) deduplication."""

    def test_keeps_higher_similarity(self):
        """Same file, identical first 150 characters: only the 0.81 copy survives."""
        shared = "x" * 150
        low = make_result(filename="intro.json", content=shared + " older copy", similarity=0.62, doc_id="a")
        high = make_result(filename="intro.json", content=shared + " newer copy", similarity=0.81, doc_id="b")

        deduplicated = deduplicate_results([low, high])

        assert len(deduplicated) == 1
        assert deduplicated[0].similarity == 0.81
        assert deduplicated[0].id == "b"

    def test_different_files_kept(self):
        results = [
            make_result(filename="a.json", content="same text", similarity=0.7),
            make_result(filename="b.json", content="same text", similarity=0.7),
        ]
        assert len(deduplicate_results(results)) == 2

    def test_idempotent(self):
        results = [
            make_result(filename="a.json", content="alpha", similarity=0.7, strategy="original"),
            make_result(filename="a.json", content="alpha", similarity=0.9, strategy="expanded"),
            make_result(filename="b.json", content="beta", similarity=0.8),
            make_result(filename="c.json", content="gamma", similarity=0.8),
        ]
        once = deduplicate_results(results)
        twice = deduplicate_results(once)

        assert once == twice
        assert [r.filename for r in once] == ["a.json", "b.json", "c.json"]


class TestScoring:
    """Tests for strategy weighting."""

    def test_weighted_score_keeps_raw_similarity(self):
        strategies = [
            SearchStrategy(name="original", queries=["q"], weight=1.0),
            SearchStrategy(name="technical", queries=["q api"], weight=0.5),
        ]
        results = [
            make_result(filename="t.json", similarity=0.9, strategy="technical"),
            make_result(filename="o.json", similarity=0.6, strategy="original"),
            make_result(filename="u.json", similarity=0.9, strategy="followup_1"),
        ]

        scored = score_results(results, strategies)

        assert [r.filename for r in scored] == ["o.json", "t.json", "u.json"]
        assert scored[0].weighted_score == pytest.approx(0.6)
        assert scored[1].weighted_score == pytest.approx(0.45)
        assert scored[1].similarity == 0.9
        # Unknown strategies get the default weight
        assert scored[2].weighted_score == pytest.approx(0.45)


class TestTroubleshootingDetection:
    """Tests for the troubleshooting keyword gate."""

    def test_problem_queries(self):
        assert is_troubleshooting_query(TROUBLESHOOTING_QUERY)
        assert is_troubleshooting_query("bench start is not working")

    def test_plain_queries(self):
        assert not is_troubleshooting_query("What is a DocType?")


class TestExecuteSearch:
    """Tests for a single tagged search."""

    @pytest.mark.asyncio
    async def test_tags_results(self, fake_llm, fake_vector_store):
        retriever = build_retriever(fake_llm, fake_vector_store)
        results = await retriever.execute_search("doctype", "expanded", threshold=0.75, limit=10)

        assert len(results) == 3
        assert all(r.search_strategy == "expanded" for r in results)
        assert all(r.query_used == "doctype" for r in results)
        assert all(r.similarity >= 0.75 for r in results)

    @pytest.mark.asyncio
    async def test_failure_returns_empty(self, fake_llm):
        store = FakeVectorStore(error=ConnectionError("qdrant down"))
        retriever = build_retriever(fake_llm, store)

        assert await retriever.execute_search("doctype", "original") == []

    @pytest.mark.asyncio
    async def test_timeout_returns_empty(self, fake_llm):
        class SlowStore(FakeVectorStore):
            async def search(self, query_text, limit=10, threshold=0.7):
                await asyncio.sleep(1)
                return []

        retriever = build_retriever(fake_llm, SlowStore(), search_timeout=0.01)
        assert await retriever.execute_search("doctype", "original") == []


class TestStrategies:
    """Tests for strategy generation and the full multi-query search."""

    @pytest.mark.asyncio
    async def test_simple_query_strategies(self, fake_llm, fake_vector_store):
        retriever = build_retriever(fake_llm, fake_vector_store)
        strategies = await retriever.generate_search_strategies("What is a DocType?")

        names = [s.name for s in strategies]
        assert names == ["original", "expanded", "technical"]
        assert strategies[0].queries == ["What is a DocType?"]
        assert len(strategies[1].queries) <= 3
        assert len(strategies[2].queries) == 2

    @pytest.mark.asyncio
    async def test_troubleshooting_strategy(self, fake_llm, frappe_documents):
        """A problem-style query adds a troubleshooting strategy that produces tagged results."""
        troubleshooting_doc = make_hit(
            filename="guides/permission_fix.json",
            title="Fixing permission errors",
            content="Grant the role write permission to fix the error.",
            similarity=0.9
        )

        def route(query):
            if "fix solution problem" in query:
                return frappe_documents + [troubleshooting_doc]
            return frappe_documents

        retriever = build_retriever(fake_llm, FakeVectorStore(route=route))
        result = await retriever.execute_multi_query(TROUBLESHOOTING_QUERY)

        assert "original" in result.search_strategies
        assert "troubleshooting" in result.search_strategies
        assert any(r.search_strategy == "troubleshooting" for r in result.deduplicated_results)

    @pytest.mark.asyncio
    async def test_complex_query_decomposed_strategy(self, fake_vector_store):
        reply = json.dumps({"subQueries": [
            {"question": "What is a DocType?", "priority": 5, "category": "concept"},
            {"question": "What is a DocField?", "priority": 4, "category": "concept"},
            {"question": "How do I configure a DocType?", "priority": 3, "category": "configuration"},
            {"question": "Where are DocType settings stored?", "priority": 1, "category": "concept"},
        ]})
        retriever = build_retriever(FakeLLM({DECOMPOSITION_PROMPT: reply}), fake_vector_store)

        strategies = await retriever.generate_search_strategies(COMPARISON_QUERY)
        decomposed = next(s for s in strategies if s.name == "decomposed")

        assert decomposed.queries == [
            "What is a DocType?",
            "What is a DocField?",
            "How do I configure a DocType?",
        ]
        assert decomposed.weight == 0.9

    @pytest.mark.asyncio
    async def test_multi_query_result(self, fake_llm, fake_vector_store):
        retriever = build_retriever(fake_llm, fake_vector_store)
        result = await retriever.execute_multi_query("What is a DocType?", max_results=2)

        assert len(result.deduplicated_results) == 2
        assert result.total_queries == len(fake_vector_store.queries)
        assert len(result.all_results) >= len(result.deduplicated_results)
        assert result.queries_executed[0] == "What is a DocType?"
        scores = [r.weighted_score for r in result.deduplicated_results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_remaining_results(self, fake_llm, frappe_documents):
        def route(query):
            if "api" in query.lower():
                raise ConnectionError("shard unavailable")
            return frappe_documents

        retriever = build_retriever(fake_llm, FakeVectorStore(route=route))
        result = await retriever.execute_multi_query("What is a DocType?")

        assert "fallback" not in result.search_strategies
        assert result.deduplicated_results
        assert all(r.search_strategy != "technical" for r in result.all_results)

    @pytest.mark.asyncio
    async def test_all_searches_failing_raises(self, fake_llm):
        store = FakeVectorStore(error=RuntimeError("qdrant down"))
        retriever = build_retriever(fake_llm, store)

        with pytest.raises(SearchUnavailableError) as exc_info:
            await retriever.execute_multi_query("What is a DocType?")

        assert "fallback failed: qdrant down" in str(exc_info.value)
        # Every strategy search, then one plain search
        assert store.searches[-1] == ("What is a DocType?", 10, 0.7)

    @pytest.mark.asyncio
    async def test_all_searches_timing_out_raises(self, fake_llm):
        class SlowStore(FakeVectorStore):
            async def search(self, query_text, limit=10, threshold=0.7):
                await asyncio.sleep(1)
                return []

        retriever = build_retriever(fake_llm, SlowStore(), search_timeout=0.01)

        with pytest.raises(SearchUnavailableError, match="timed out"):
            await retriever.execute_multi_query("What is a DocType?")

    @pytest.mark.asyncio
    async def test_strategy_failure_falls_back_to_plain_search(self, fake_llm, fake_vector_store):
        decomposer = QueryDecomposer(fake_llm)
        decomposer.decompose_query = AsyncMock(side_effect=RuntimeError("decomposer crashed"))
        retriever = MultiStrategyRetriever(
            vector_store=fake_vector_store,
            query_expander=QueryExpander(fake_llm),
            query_decomposer=decomposer
        )

        result = await retriever.execute_multi_query("What is a DocType?")

        assert fake_vector_store.searches == [("What is a DocType?", 10, 0.7)]
        assert result.search_strategies == ["fallback"]
        assert result.queries_executed == ["What is a DocType?"]
        assert result.total_queries == 1
        assert len(result.deduplicated_results) == 4
        assert all(r.search_strategy == "fallback" for r in result.deduplicated_results)


class TestIterativeMultiQuery:
    """Tests for follow-up rounds in the retriever."""

    @pytest.mark.asyncio
    async def test_follow_up_round(self, frappe_documents):
        reply = json.dumps({"followUpQueries": [
            {"question": "How do DocType permissions work?", "priority": 4, "category": "concept"}
        ]})
        store = FakeVectorStore(frappe_documents)
        retriever = build_retriever(FakeLLM({DECOMPOSER_FOLLOW_UP_PROMPT: reply}), store)

        result = await retriever.execute_iterative_search("What is a DocType?", max_iterations=2, max_results=10)

        assert "followup_1" in result.search_strategies
        assert "How do DocType permissions work?" in result.queries_executed
        assert len(result.deduplicated_results) <= 10

    @pytest.mark.asyncio
    async def test_no_follow_ups_stops(self, fake_llm, fake_vector_store):
        retriever = build_retriever(fake_llm, fake_vector_store)
        result = await retriever.execute_iterative_search("What is a DocType?", max_iterations=3)

        assert not any(name.startswith("followup") for name in result.search_strategies)
