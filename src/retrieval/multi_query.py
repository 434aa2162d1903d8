"""
Multi-Strategy Retrieval Module

Instead of embedding a single query, the retriever builds several named
search strategies from one user question, runs every (strategy, query)
pair against the vector store concurrently, tags each hit with where it
came from, and merges everything into one deduplicated pool.

Strategies (name / weight / threshold / limit):
    original         verbatim query                  1.0  / 0.75 / 8
    decomposed       top-3 sub-questions              0.9  / 0.70 / 6
    expanded         confident expansions             0.8  / 0.65 / 6
    technical        "api" variations                 0.7  / 0.60 / 5
    troubleshooting  only for problem-style queries   0.85 / 0.65 / 5

A failing search contributes nothing. If every search fails, one plain
search is tried; SearchUnavailableError is raised only when that fails too.
"""

import asyncio
import math
import time
from typing import Dict, Iterable, List, Sequence, Tuple

from loguru import logger

from . import config
from .models import DocumentHit, MultiQueryResult, SearchResult, SearchStrategy
from .query_decomposer import QueryDecomposer
from .query_expander import QueryExpander

TROUBLESHOOTING_KEYWORDS = [
    "error", "problem", "issue", "not working", "failed", "fix", "solve",
    "troubleshoot", "debug", "broken", "wrong", "help", "can't", "unable",
]

DEFAULT_STRATEGY_WEIGHT = 0.5
DEDUP_CONTENT_PREFIX = 100

FOLLOW_UP_THRESHOLD = 0.65
FOLLOW_UP_LIMIT = 5


class SearchUnavailableError(Exception):
    """The vector store failed every search of a multi-query pass."""


def _log_search_failure(strategy: str, query: str, error: BaseException) -> None:
    if isinstance(error, asyncio.TimeoutError):
        logger.warning(f"Search timed out in strategy {strategy}: {query[:60]}")
    else:
        logger.error(f"Error in search strategy {strategy}: {error}")


def _describe_error(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "search timed out"
    return str(error) or type(error).__name__


def is_troubleshooting_query(query: str) -> bool:
    """True if the query reads like a problem report."""
    query_lower = query.lower()
    return any(keyword in query_lower for keyword in TROUBLESHOOTING_KEYWORDS)


def dedup_key(result: SearchResult) -> Tuple[str, str]:
    """Identity used for deduplication: filename + first 100 chars of content."""
    return result.filename, result.content[:DEDUP_CONTENT_PREFIX]


def deduplicate_results(results: Iterable[SearchResult]) -> List[SearchResult]:
    """
    Keep one result per (filename, content prefix), the most similar one.

    Results are processed in descending raw similarity, so the first result
    seen for a key is already the best; a later duplicate only replaces it
    with a strictly higher similarity. Running this on its own output
    returns the same list.
    """
    ordered = sorted(results, key=lambda r: r.similarity, reverse=True)

    deduplicated: List[SearchResult] = []
    positions: Dict[Tuple[str, str], int] = {}
    for result in ordered:
        key = dedup_key(result)
        if key not in positions:
            positions[key] = len(deduplicated)
            deduplicated.append(result)
        elif result.similarity > deduplicated[positions[key]].similarity:
            deduplicated[positions[key]] = result

    return deduplicated


def score_results(
    results: Sequence[SearchResult],
    strategies: Sequence[SearchStrategy]
) -> List[SearchResult]:
    """
    Weight each result by its strategy and sort by the weighted score.

    The raw similarity is preserved; the composite goes to weighted_score.
    """
    weights = {strategy.name: strategy.weight for strategy in strategies}
    scored = [
        result.model_copy(update={
            "weighted_score": result.similarity * weights.get(result.search_strategy, DEFAULT_STRATEGY_WEIGHT)
        })
        for result in results
    ]
    return sorted(scored, key=lambda r: r.weighted_score, reverse=True)


class MultiStrategyRetriever:
    """
    Retrieves documents using multiple query strategies in parallel.

    Provides better recall than a single embedding lookup at the cost of
    more vector-store calls (10+ per question is normal), which is why all
    searches are launched together and awaited as one batch.
    """

    def __init__(
        self,
        vector_store,
        query_expander: QueryExpander,
        query_decomposer: QueryDecomposer,
        search_timeout: float = config.SEARCH_TIMEOUT_SECONDS
    ):
        """
        Initialize multi-strategy retriever.

        Args:
            vector_store: Object exposing `async search(query_text, limit, threshold)`
            query_expander: QueryExpander instance
            query_decomposer: QueryDecomposer instance
            search_timeout: Per-search timeout in seconds (0 disables it)
        """
        self._vector_store = vector_store
        self._query_expander = query_expander
        self._query_decomposer = query_decomposer
        self._search_timeout = search_timeout

        logger.info(f"MultiStrategyRetriever initialized (search_timeout={search_timeout}s)")

    async def _search(
        self,
        query: str,
        strategy: str,
        threshold: float,
        limit: int
    ) -> List[SearchResult]:
        """Run one vector search and tag the hits; errors and timeouts propagate."""
        search = self._vector_store.search(query, limit=limit, threshold=threshold)
        if self._search_timeout and self._search_timeout > 0:
            hits = await asyncio.wait_for(search, timeout=self._search_timeout)
        else:
            hits = await search

        return [
            SearchResult(
                **hit.model_dump(include=set(DocumentHit.model_fields)),
                search_strategy=strategy,
                query_used=query
            )
            for hit in hits
            if hit.similarity >= threshold
        ]

    async def execute_search(
        self,
        query: str,
        strategy: str,
        threshold: float = 0.7,
        limit: int = 10
    ) -> List[SearchResult]:
        """
        Run one vector search and tag the hits with strategy and query.

        Returns an empty list if the search fails or times out.
        """
        try:
            return await self._search(query, strategy, threshold, limit)
        except Exception as e:
            _log_search_failure(strategy, query, e)
            return []

    async def generate_search_strategies(self, query: str) -> List[SearchStrategy]:
        """
        Build the strategy list for a query.

        Decomposition, expansion and the context variations are requested
        concurrently; each already degrades to a safe default on failure.
        """
        troubleshooting = is_troubleshooting_query(query)

        tasks = [
            self._query_decomposer.decompose_query(query),
            self._query_expander.expand_query(query),
            self._query_expander.generate_search_variations(query, "api"),
        ]
        if troubleshooting:
            tasks.append(self._query_expander.generate_search_variations(query, "troubleshooting"))

        outcomes = await asyncio.gather(*tasks)
        decomposition, expansion, technical_variations = outcomes[:3]

        strategies = [
            SearchStrategy(name="original", queries=[query], weight=1.0, threshold=0.75, limit=8)
        ]

        if decomposition.is_complex and len(decomposition.sub_queries) > 1:
            by_priority = sorted(decomposition.sub_queries, key=lambda sq: sq.priority, reverse=True)
            strategies.append(SearchStrategy(
                name="decomposed",
                queries=[sq.question for sq in by_priority[:3]],
                weight=0.9,
                threshold=0.7,
                limit=6
            ))

        confident = [eq.expanded for eq in expansion.expanded_queries if eq.confidence > 0.6][:3]
        if confident:
            strategies.append(SearchStrategy(
                name="expanded", queries=confident, weight=0.8, threshold=0.65, limit=6
            ))

        if len(technical_variations) > 1:
            strategies.append(SearchStrategy(
                name="technical",
                queries=technical_variations[:2],
                weight=0.7,
                threshold=0.6,
                limit=5
            ))

        if troubleshooting:
            strategies.append(SearchStrategy(
                name="troubleshooting",
                queries=outcomes[3][:2],
                weight=0.85,
                threshold=0.65,
                limit=5
            ))

        logger.info(f"Generated strategies: {[s.name for s in strategies]}")
        return strategies

    async def execute_multi_query(self, query: str, max_results: int = 15) -> MultiQueryResult:
        """
        Execute a multi-strategy search.

        Individual search failures are tolerated. If strategy generation
        fails, or every search fails, one plain search tagged `fallback`
        is run instead.

        Args:
            query: User question
            max_results: Number of deduplicated results to keep

        Returns:
            MultiQueryResult with the full pool and the deduplicated,
            strategy-weighted top results

        Raises:
            SearchUnavailableError: The plain fallback search failed too
        """
        start_time = time.perf_counter()

        try:
            strategies = await self.generate_search_strategies(query)

            pairs = [
                (strategy, strategy_query)
                for strategy in strategies
                for strategy_query in strategy.queries
            ]
            outcomes = await asyncio.gather(*[
                self._search(strategy_query, strategy.name, strategy.threshold, strategy.limit)
                for strategy, strategy_query in pairs
            ], return_exceptions=True)

            all_results: List[SearchResult] = []
            errors: List[Exception] = []
            for (strategy, strategy_query), outcome in zip(pairs, outcomes):
                if isinstance(outcome, Exception):
                    _log_search_failure(strategy.name, strategy_query, outcome)
                    errors.append(outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    all_results.extend(outcome)

            if errors and len(errors) == len(pairs):
                raise SearchUnavailableError(
                    f"All {len(pairs)} searches failed: {_describe_error(errors[-1])}"
                )

            deduplicated = deduplicate_results(all_results)
            final_results = score_results(deduplicated, strategies)[:max_results]

            logger.info(
                f"Multi-query: {len(pairs)} searches ({len(errors)} failed), {len(all_results)} hits, "
                f"{len(deduplicated)} unique, returning {len(final_results)}"
            )
            return MultiQueryResult(
                original_query=query,
                all_results=all_results,
                deduplicated_results=final_results,
                search_strategies=[s.name for s in strategies],
                queries_executed=list(dict.fromkeys(q for _, q in pairs)),
                total_queries=len(pairs),
                execution_time_ms=(time.perf_counter() - start_time) * 1000
            )
        except Exception as e:
            reason = _describe_error(e)
            logger.error(f"Error in multi-query execution, falling back to plain search: {reason}")

        try:
            fallback_results = await self._search(query, "fallback", 0.7, 10)
        except Exception as e:
            _log_search_failure("fallback", query, e)
            raise SearchUnavailableError(f"{reason}; fallback failed: {_describe_error(e)}") from e

        return MultiQueryResult(
            original_query=query,
            all_results=fallback_results,
            deduplicated_results=fallback_results,
            search_strategies=["fallback"],
            queries_executed=[query],
            total_queries=1,
            execution_time_ms=(time.perf_counter() - start_time) * 1000
        )

    async def execute_iterative_search(
        self,
        query: str,
        max_iterations: int = 2,
        max_results: int = 15
    ) -> MultiQueryResult:
        """
        Multi-query search followed by rounds of follow-up questions.

        Each round asks the decomposer for follow-ups seeded with the top 3
        current results and searches them concurrently. Stops early when no
        follow-ups come back or a round finds nothing.

        Raises SearchUnavailableError if the initial pass cannot reach the
        vector store at all.
        """
        start_time = time.perf_counter()

        initial = await self.execute_multi_query(query, math.floor(max_results * 0.7))
        current_results: List[SearchResult] = list(initial.deduplicated_results)
        all_results: List[SearchResult] = list(initial.all_results)
        queries_executed = list(initial.queries_executed)
        total_queries = initial.total_queries
        strategies_used = list(initial.search_strategies)

        for iteration in range(1, max_iterations):
            if not current_results:
                break

            follow_ups = await self._query_decomposer.generate_follow_up_queries(
                query, current_results[:3]
            )
            if not follow_ups:
                break

            strategy_name = f"followup_{iteration}"
            batches = await asyncio.gather(*[
                self.execute_search(fq.question, strategy_name, FOLLOW_UP_THRESHOLD, FOLLOW_UP_LIMIT)
                for fq in follow_ups
            ])
            new_results = [result for batch in batches for result in batch]

            all_results.extend(new_results)
            queries_executed.extend(fq.question for fq in follow_ups)
            total_queries += len(follow_ups)
            strategies_used.append(strategy_name)
            current_results = new_results

            logger.info(f"Follow-up round {iteration}: {len(follow_ups)} queries, {len(new_results)} hits")

        final_results = deduplicate_results(all_results)[:max_results]

        return MultiQueryResult(
            original_query=query,
            all_results=all_results,
            deduplicated_results=final_results,
            search_strategies=list(dict.fromkeys(strategies_used)),
            queries_executed=list(dict.fromkeys(queries_executed)),
            total_queries=total_queries,
            execution_time_ms=(time.perf_counter() - start_time) * 1000
        )
