"""
Iterative Refinement Module

Decides whether a ranked result set answers the user's question well
enough, and if not, drives extra search rounds:

    gap analysis -> follow-up queries -> search -> merge -> repeat

The loop ends when the gap analysis is confident enough, the iteration
budget is spent, no usable follow-up query is left, or two consecutive
rounds return mostly the same top results (convergence).
"""

import asyncio
import math
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from loguru import logger

from . import config
from .llm_output import parse_model_json
from .models import (
    GapAnalysis,
    IterationRecord,
    IterativeSearchResult,
    RankedResult,
    RefinementContext,
    RefinementResult,
)
from .ollama_llm import OllamaLLM
from .ranking import word_overlap_similarity

SearchFunction = Callable[[str], Awaitable[List[RankedResult]]]

# Above this confidence no follow-up queries are generated at all
FOLLOW_UP_SKIP_CONFIDENCE = 0.85
MAX_QUERY_SIMILARITY = 0.8
MIN_FOLLOW_UP_LENGTH = 10
MAX_FOLLOW_UPS = 4
MAX_FALLBACK_FOLLOW_UPS = 2


def _string_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


class GapAnalyzer:
    """
    Estimates how well a result set answers a query.

    Uses the LLM when possible and a score-based heuristic when the
    model output cannot be parsed.
    """

    def __init__(self, llm: OllamaLLM, max_results_inspected: int = 5):
        self._llm = llm
        self._max_results_inspected = max_results_inspected

    def _build_prompt(self, original_query: str, results: Sequence[RankedResult]) -> str:
        summary = "\n".join(
            f"""
{index + 1}. Title: {result.title}
   Content Preview: {result.content[:200]}...
   Source: {result.filename}
   Ranking Score: {result.ranking_score:.3f}"""
            for index, result in enumerate(results[:self._max_results_inspected])
        )
        return f"""Analyze the search results for the query "{original_query}" and identify information gaps.

Search Results Summary:
{summary}

Please analyze these results and identify:
1. Information gaps - What important information is missing?
2. Missing topics - What related topics should be covered but aren't?
3. Ambiguous areas - What parts need clarification?
4. Areas needing more detail - What topics are mentioned but need deeper explanation?
5. Overall confidence - How well do these results answer the original query? (0-1)

Respond in JSON format:
{{
  "informationGaps": ["gap1", "gap2"],
  "missingTopics": ["topic1", "topic2"],
  "ambiguousAreas": ["area1", "area2"],
  "needsMoreDetail": ["detail1", "detail2"],
  "confidence": 0.8
}}
"""

    @staticmethod
    def heuristic_analysis(results: Sequence[RankedResult]) -> GapAnalysis:
        """Gap analysis derived from ranking scores alone."""
        if not results:
            return GapAnalysis(
                information_gaps=["No results found"],
                missing_topics=["All topics"],
                confidence=0.0
            )

        average = sum(r.ranking_score for r in results) / len(results)
        confidence = max(0.0, min(1.0, average))
        return GapAnalysis(
            information_gaps=["Low quality results"] if confidence < 0.6 else [],
            missing_topics=["Insufficient coverage"] if len(results) < 3 else [],
            ambiguous_areas=[],
            needs_more_detail=["More detailed information needed"] if confidence < 0.7 else [],
            confidence=confidence
        )

    async def analyze_information_gaps(
        self,
        original_query: str,
        results: Sequence[RankedResult]
    ) -> GapAnalysis:
        """
        Identify what the current results fail to cover.

        An empty result set always yields confidence 0 without a model call.
        """
        if not results:
            return self.heuristic_analysis(results)

        try:
            response = await self._llm.acomplete(
                self._build_prompt(original_query, results),
                temperature=0.3,
                max_tokens=1000
            )
            raw_output = str(response.text)
        except Exception as e:
            logger.error(f"Error analyzing information gaps: {e}")
            return self.heuristic_analysis(results)

        analysis = parse_model_json(raw_output, None, expected_type=dict)
        if analysis is None:
            logger.warning("Gap analysis output unparseable, using score heuristic")
            return self.heuristic_analysis(results)

        try:
            confidence = float(analysis.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0
        if not math.isfinite(confidence):
            confidence = 0.0

        return GapAnalysis(
            information_gaps=_string_list(analysis.get("informationGaps")),
            missing_topics=_string_list(analysis.get("missingTopics")),
            ambiguous_areas=_string_list(analysis.get("ambiguousAreas")),
            needs_more_detail=_string_list(analysis.get("needsMoreDetail")),
            confidence=max(0.0, min(1.0, confidence))
        )


def merge_iterative_results(batches: Iterable[Sequence[RankedResult]]) -> List[RankedResult]:
    """
    Merge result lists from several rounds.

    One result per (filename, title), keeping the higher ranking score,
    sorted by ranking score.
    """
    merged = {}
    for batch in batches:
        for result in batch:
            key = (result.filename, result.title)
            existing = merged.get(key)
            if existing is None or result.ranking_score > existing.ranking_score:
                merged[key] = result
    return sorted(merged.values(), key=lambda r: r.ranking_score, reverse=True)


class IterativeRefinementController:
    """
    Runs gap-driven refinement rounds on top of an initial search.
    """

    def __init__(
        self,
        llm: OllamaLLM,
        gap_analyzer: Optional[GapAnalyzer] = None,
        max_iterations: int = config.MAX_ITERATIONS,
        confidence_threshold: float = config.CONFIDENCE_THRESHOLD,
        convergence_overlap: float = config.CONVERGENCE_OVERLAP,
        convergence_window: int = config.CONVERGENCE_WINDOW
    ):
        """
        Initialize the refinement controller.

        Args:
            llm: OllamaLLM instance for follow-up generation
            gap_analyzer: GapAnalyzer (built from llm if omitted)
            max_iterations: Default iteration budget
            confidence_threshold: Default confidence that ends refinement
            convergence_overlap: Share of the top window that must repeat
            convergence_window: Number of top results compared
        """
        self._llm = llm
        self.gap_analyzer = gap_analyzer or GapAnalyzer(llm)
        self.max_iterations = max_iterations
        self.confidence_threshold = confidence_threshold
        self.convergence_overlap = convergence_overlap
        self.convergence_window = convergence_window

        logger.info(
            f"IterativeRefinementController initialized (max_iterations={max_iterations}, "
            f"confidence_threshold={confidence_threshold})"
        )

    @staticmethod
    def _is_new_query(query: str, previous_queries: Sequence[str]) -> bool:
        query_lower = query.lower()
        return all(
            word_overlap_similarity(query_lower, previous.lower()) <= MAX_QUERY_SIMILARITY
            for previous in previous_queries
        )

    @staticmethod
    def fallback_follow_up_queries(
        original_query: str,
        gap_analysis: GapAnalysis,
        previous_queries: Sequence[str] = ()
    ) -> List[str]:
        """Follow-ups built from the first missing topic, gap and detail."""
        seen = {query.lower() for query in previous_queries}
        queries: List[str] = []
        for items in (gap_analysis.missing_topics, gap_analysis.information_gaps, gap_analysis.needs_more_detail):
            if not items:
                continue
            candidate = f"{original_query} {items[0]}"
            if candidate.lower() in seen:
                continue
            seen.add(candidate.lower())
            queries.append(candidate)
        return queries[:MAX_FALLBACK_FOLLOW_UPS]

    async def generate_follow_up_queries(
        self,
        original_query: str,
        gap_analysis: GapAnalysis,
        previous_queries: Sequence[str] = ()
    ) -> List[str]:
        """
        Turn a gap analysis into 2-4 new search queries.

        Model suggestions that repeat a previous query (word overlap above
        0.8) or are shorter than 10 characters are dropped. If the model
        call or parsing fails, queries are built from the gap analysis.
        """
        if gap_analysis.confidence > FOLLOW_UP_SKIP_CONFIDENCE:
            return []

        prompt = f"""Original Query: "{original_query}"

Gap Analysis:
- Information Gaps: {', '.join(gap_analysis.information_gaps)}
- Missing Topics: {', '.join(gap_analysis.missing_topics)}
- Ambiguous Areas: {', '.join(gap_analysis.ambiguous_areas)}
- Needs More Detail: {', '.join(gap_analysis.needs_more_detail)}
- Current Confidence: {gap_analysis.confidence}

Previous Queries Used: {', '.join(previous_queries)}

Generate 2-4 specific follow-up queries that would help fill these information gaps.
Focus on:
1. Addressing the most critical gaps first
2. Being specific and actionable
3. Avoiding repetition of previous queries
4. Targeting Frappe Framework documentation

Respond with a JSON array of strings:
["query1", "query2", "query3"]
"""
        try:
            response = await self._llm.acomplete(prompt, temperature=0.3, max_tokens=1000)
            raw_output = str(response.text)
        except Exception as e:
            logger.error(f"Error generating follow-up queries: {e}")
            return self.fallback_follow_up_queries(original_query, gap_analysis, previous_queries)

        queries = parse_model_json(raw_output, None, expected_type=list)
        if queries is None:
            logger.warning("Follow-up output unparseable, building queries from gap analysis")
            return self.fallback_follow_up_queries(original_query, gap_analysis, previous_queries)

        follow_ups = [
            query.strip() for query in queries
            if isinstance(query, str)
            and len(query.strip()) >= MIN_FOLLOW_UP_LENGTH
            and self._is_new_query(query.strip(), previous_queries)
        ]
        return list(dict.fromkeys(follow_ups))[:MAX_FOLLOW_UPS]

    async def should_refine_search(self, context: RefinementContext) -> RefinementResult:
        """
        Decide whether another search round is worthwhile.

        Never refines once context.iteration has reached max_iterations.
        """
        if context.iteration >= context.max_iterations:
            return RefinementResult(
                should_refine=False,
                follow_up_queries=[],
                gap_analysis=GapAnalysis(confidence=1.0),
                refinement_reason="Maximum iterations reached",
                confidence=1.0
            )

        gap_analysis = await self.gap_analyzer.analyze_information_gaps(
            context.original_query, context.search_results
        )

        if gap_analysis.confidence >= context.confidence_threshold:
            return RefinementResult(
                should_refine=False,
                follow_up_queries=[],
                gap_analysis=gap_analysis,
                refinement_reason="Confidence threshold met",
                confidence=gap_analysis.confidence
            )

        follow_ups = await self.generate_follow_up_queries(
            context.original_query, gap_analysis, context.follow_up_queries
        )
        should_refine = len(follow_ups) > 0

        if should_refine:
            reason = f"Low confidence ({gap_analysis.confidence:.2f}) - gaps identified"
        else:
            reason = "No actionable follow-up queries generated"

        return RefinementResult(
            should_refine=should_refine,
            follow_up_queries=follow_ups,
            gap_analysis=gap_analysis,
            refinement_reason=reason,
            confidence=gap_analysis.confidence
        )

    def calculate_convergence(
        self,
        previous_results: Sequence[RankedResult],
        current_results: Sequence[RankedResult]
    ) -> bool:
        """True when most of the top results survived the last round."""
        if not previous_results:
            return False

        top_previous = previous_results[:self.convergence_window]
        top_current = current_results[:self.convergence_window]
        current_keys = {(r.filename, r.title) for r in top_current}

        similar = sum(1 for r in top_previous if (r.filename, r.title) in current_keys)
        return similar / max(len(top_previous), len(top_current)) >= self.convergence_overlap

    async def execute_iterative_search(
        self,
        original_query: str,
        initial_results: Sequence[RankedResult],
        search_function: SearchFunction,
        max_iterations: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> IterativeSearchResult:
        """
        Refine a result set over several rounds.

        Args:
            original_query: The user's question
            initial_results: Ranked results of the first search
            search_function: Coroutine mapping a query to ranked results
            max_iterations: Iteration budget (default: controller setting)
            confidence_threshold: Stop confidence (default: controller setting)
            cancel_event: When set, no further round is started

        Returns:
            IterativeSearchResult with the merged results and the history
        """
        if max_iterations is None:
            max_iterations = self.max_iterations
        if confidence_threshold is None:
            confidence_threshold = self.confidence_threshold

        current_results: List[RankedResult] = list(initial_results)
        all_queries = [original_query]
        convergence_reached = False

        initial_analysis = await self.gap_analyzer.analyze_information_gaps(original_query, current_results)
        iterations = [IterationRecord(
            iteration=0,
            query=original_query,
            results=current_results,
            gap_analysis=initial_analysis,
            refinement_applied=False
        )]

        for iteration in range(1, max_iterations + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Refinement cancelled by caller")
                break

            decision = await self.should_refine_search(RefinementContext(
                original_query=original_query,
                search_results=current_results,
                iteration=iteration,
                max_iterations=max_iterations,
                confidence_threshold=confidence_threshold,
                follow_up_queries=list(all_queries)
            ))
            if not decision.should_refine:
                logger.info(f"Refinement stopped at iteration {iteration}: {decision.refinement_reason}")
                convergence_reached = True
                break

            outcomes = await asyncio.gather(
                *[search_function(query) for query in decision.follow_up_queries],
                return_exceptions=True
            )
            iteration_results: List[RankedResult] = []
            for query, outcome in zip(decision.follow_up_queries, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Error executing follow-up query '{query}': {outcome}")
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                iteration_results.extend(outcome)
                all_queries.append(query)

            previous_results = current_results
            current_results = merge_iterative_results([current_results, iteration_results])

            iterations.append(IterationRecord(
                iteration=iteration,
                query=" | ".join(decision.follow_up_queries),
                results=iteration_results,
                gap_analysis=decision.gap_analysis,
                refinement_applied=True
            ))
            logger.info(
                f"Refinement iteration {iteration}: {len(iteration_results)} new results, "
                f"{len(current_results)} merged"
            )

            if self.calculate_convergence(previous_results, current_results):
                logger.info(f"Results converged at iteration {iteration}")
                convergence_reached = True
                break

        final_analysis = await self.gap_analyzer.analyze_information_gaps(original_query, current_results)

        return IterativeSearchResult(
            final_results=current_results,
            iterations=iterations,
            total_iterations=len(iterations) - 1,
            convergence_reached=convergence_reached,
            final_confidence=final_analysis.confidence
        )

    @staticmethod
    def get_refinement_summary(result: IterativeSearchResult) -> str:
        """Multi-line summary of a refinement run, for logs and scripts."""
        summary = [
            "Iterative Search Summary:",
            f"- Total Iterations: {result.total_iterations}",
            f"- Convergence Reached: {result.convergence_reached}",
            f"- Final Confidence: {result.final_confidence:.3f}",
            f"- Final Results Count: {len(result.final_results)}",
            "",
            "Iteration Details:",
        ]
        for record in result.iterations:
            label = "Refinement" if record.refinement_applied else "Initial"
            summary.append(f"{record.iteration}. {label}: {record.query}")
            summary.append(
                f"   Results: {len(record.results)}, Confidence: {record.gap_analysis.confidence:.3f}"
            )
            if record.gap_analysis.information_gaps:
                summary.append(f"   Gaps: {', '.join(record.gap_analysis.information_gaps)}")
        return "\n".join(summary)
