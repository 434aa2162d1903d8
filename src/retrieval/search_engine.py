"""
Search Engine Module

The public search entry point. Combines the retrieval stages:

1. Multi-strategy retrieval (twice the requested limit, for ranking headroom)
2. Seven-factor ranking against the user's original question
3. Optional gap-driven iterative refinement

If the multi-stage path fails, a plain vector search is ranked with
neutral factors instead; if that fails too, an empty response carrying
the failure reason is returned. The same empty response is returned
straight away when the retriever reports that every vector search,
its own plain fallback included, has failed. search() does not raise
for collaborator failures.
"""

import asyncio
import time
from typing import List, Optional

from loguru import logger

from .models import (
    DocumentHit,
    IterativeSearchResult,
    RankedResult,
    RankingFactors,
    SearchMetadata,
    SearchOptions,
    SearchResponse,
)
from .multi_query import MultiStrategyRetriever, SearchUnavailableError
from .ranking import ResultRanker
from .refinement import IterativeRefinementController

FALLBACK_CONFIDENCE = 0.5
NEUTRAL_FACTOR = 0.5


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000


def _failure_response(queries_used: List[str], start_time: float, reason: str) -> SearchResponse:
    return SearchResponse(
        results=[],
        metadata=SearchMetadata(
            queries_used=queries_used,
            final_confidence=0.0,
            processing_time_ms=_elapsed_ms(start_time),
            failure_reason=reason
        )
    )


class FrappeDocsSearchEngine:
    """
    Multi-stage documentation search.

    All collaborators are injected; the engine keeps no per-request state.
    """

    def __init__(
        self,
        retriever: MultiStrategyRetriever,
        ranker: ResultRanker,
        refinement_controller: IterativeRefinementController,
        vector_store
    ):
        """
        Initialize the search engine.

        Args:
            retriever: MultiStrategyRetriever for the main search path
            ranker: ResultRanker used for every ranking step
            refinement_controller: IterativeRefinementController
            vector_store: Vector store used directly by the fallback search
        """
        self.retriever = retriever
        self.ranker = ranker
        self.refinement_controller = refinement_controller
        self.vector_store = vector_store
        logger.info("FrappeDocsSearchEngine initialized")

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> SearchResponse:
        """
        Search the documentation for a question.

        Args:
            query: User question
            options: SearchOptions (defaults apply when omitted)
            cancel_event: When set, refinement rounds stop early

        Returns:
            SearchResponse: ranked results plus diagnostics
        """
        options = options or SearchOptions()
        start_time = time.perf_counter()

        if not query or not query.strip():
            logger.warning("Empty search query")
            return _failure_response([], start_time, "Empty query")

        logger.info(f"Searching: {query[:100]}")
        try:
            return await self._multi_stage_search(query, options, start_time, cancel_event)
        except SearchUnavailableError as e:
            logger.error(f"Vector search unavailable: {e}")
            return _failure_response([query], start_time, str(e))
        except Exception as e:
            logger.error(f"Error in multi-stage search, falling back to plain search: {e}")
            return await self._fallback_search(query, options, start_time, str(e))

    async def _multi_stage_search(
        self,
        query: str,
        options: SearchOptions,
        start_time: float,
        cancel_event: Optional[asyncio.Event]
    ) -> SearchResponse:
        multi_query_result = await self.retriever.execute_multi_query(query, options.limit * 2)
        ranked = self.ranker.rank_results(
            multi_query_result.deduplicated_results, query, options.ranking
        )
        final_results = ranked[:options.limit]

        iterative_result: Optional[IterativeSearchResult] = None
        refinement_allowed = cancel_event is None or not cancel_event.is_set()
        if options.enable_iterative_refinement and refinement_allowed:
            async def search_function(refinement_query: str) -> List[RankedResult]:
                refinement = await self.retriever.execute_multi_query(refinement_query, options.limit)
                # Ranked against the user's question, not the follow-up
                return self.ranker.rank_results(refinement.deduplicated_results, query, options.ranking)

            iterative_result = await self.refinement_controller.execute_iterative_search(
                query,
                final_results,
                search_function,
                max_iterations=options.max_iterations,
                confidence_threshold=options.confidence_threshold,
                cancel_event=cancel_event
            )
            final_results = iterative_result.final_results[:options.limit]
            logger.debug(self.refinement_controller.get_refinement_summary(iterative_result))

        queries_used = [query] + list(multi_query_result.queries_executed)
        total_considered = len(multi_query_result.all_results)
        if iterative_result is not None:
            for record in iterative_result.iterations:
                if record.refinement_applied:
                    queries_used.extend(record.query.split(" | "))
                total_considered += len(record.results)

        if iterative_result is not None:
            final_confidence = iterative_result.final_confidence
        else:
            # Boosts can push a ranking score above 1
            final_confidence = min(1.0, ranked[0].ranking_score) if ranked else 0.0

        metadata = SearchMetadata(
            queries_used=list(dict.fromkeys(queries_used)),
            iterations_performed=iterative_result.total_iterations if iterative_result else 0,
            final_confidence=final_confidence,
            convergence_reached=iterative_result.convergence_reached if iterative_result else False,
            total_results_considered=total_considered,
            processing_time_ms=_elapsed_ms(start_time)
        )
        logger.info(
            f"Search complete: {len(final_results)} results, "
            f"confidence {final_confidence:.3f}, {metadata.processing_time_ms:.0f}ms"
        )
        return SearchResponse(results=final_results, metadata=metadata)

    async def _fallback_search(
        self,
        query: str,
        options: SearchOptions,
        start_time: float,
        reason: str
    ) -> SearchResponse:
        try:
            hits = await self.vector_store.search(query, limit=options.limit, threshold=options.threshold)
        except Exception as e:
            logger.error(f"Fallback search also failed: {e}")
            return _failure_response([query], start_time, f"{reason}; fallback failed: {e}")

        results = [
            RankedResult(
                **hit.model_dump(include=set(DocumentHit.model_fields)),
                search_strategy="fallback",
                query_used=query,
                ranking_score=hit.similarity,
                ranking_factors=RankingFactors(
                    semantic_similarity=max(0.0, min(1.0, hit.similarity)),
                    title_relevance=NEUTRAL_FACTOR,
                    content_quality=NEUTRAL_FACTOR,
                    document_type=NEUTRAL_FACTOR,
                    recency=NEUTRAL_FACTOR,
                    source_reliability=NEUTRAL_FACTOR,
                    query_alignment=1.0
                ),
                original_rank=index
            )
            for index, hit in enumerate(hits)
        ]
        logger.warning(f"Returning {len(results)} fallback results")
        return SearchResponse(
            results=results,
            metadata=SearchMetadata(
                queries_used=[query],
                final_confidence=FALLBACK_CONFIDENCE,
                total_results_considered=len(hits),
                processing_time_ms=_elapsed_ms(start_time),
                failure_reason=reason
            )
        )
