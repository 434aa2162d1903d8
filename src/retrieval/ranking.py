"""
Result Ranking Module

Re-orders retrieved passages using seven independent factors:

    semantic_similarity   raw vector-store score
    title_relevance       query words / phrase present in the title
    content_quality       length, code samples and document structure
    document_type         api > tutorial > example > config > reference
    recency               age of the processedAt timestamp
    source_reliability    official Frappe domains first
    query_alignment       how close the producing query was to the user's

Each factor is a pure function of (result, query, config) so it can be
tested in isolation. The weighted sum is then multiplied by categorical
boosts (official docs, tutorials, API docs, examples).
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .models import RankedResult, RankingFactors, SearchResult

OFFICIAL_DOMAINS = ("frappeframework.com", "frappe.io")

STRATEGY_ALIGNMENT = {
    "original": 1.0,
    "troubleshooting": 0.9,
    "decomposed": 0.85,
    "expanded": 0.8,
    "technical": 0.75,
}
DEFAULT_STRATEGY_ALIGNMENT = 0.7

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

CODE_PATTERNS = [
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"`[^`]+`"),
    re.compile(r"def\s+\w+\("),
    re.compile(r"class\s+\w+"),
    re.compile(r"function\s+\w+"),
]

STRUCTURE_PATTERNS = [
    re.compile(r"^#+\s", re.MULTILINE),          # headers
    re.compile(r"^\s*[-*+]\s", re.MULTILINE),    # bullet lists
    re.compile(r"^\s*\d+\.\s", re.MULTILINE),    # numbered lists
    re.compile(r"\n\s*\n"),                      # paragraph breaks
]


class RankingWeights(BaseModel):
    model_config = ConfigDict(extra="forbid")

    semantic_similarity: float = 0.35
    title_relevance: float = 0.20
    content_quality: float = 0.15
    document_type: float = 0.10
    recency: float = 0.05
    source_reliability: float = 0.10
    query_alignment: float = 0.05


class RankingBoosts(BaseModel):
    model_config = ConfigDict(extra="forbid")

    official_docs: float = 1.2
    tutorials: float = 1.1
    api_docs: float = 1.15
    examples: float = 1.05


def _snake_case_keys(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Accept camelCase override keys (semanticSimilarity) as well as snake_case."""
    return {_CAMEL_BOUNDARY.sub("_", key).lower(): value for key, value in values.items()}


class RankingConfig(BaseModel):
    """Weights, boosts and the domains treated as official documentation."""
    model_config = ConfigDict(extra="forbid")

    weights: RankingWeights = Field(default_factory=RankingWeights)
    boosts: RankingBoosts = Field(default_factory=RankingBoosts)
    official_domains: List[str] = Field(default_factory=lambda: list(OFFICIAL_DOMAINS))

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "RankingConfig":
        """
        Return a validated copy with a partial override applied.

        Unspecified weights and boosts keep their current values, e.g.
        {"weights": {"recency": 0.2}} only changes the recency weight.
        Unknown keys and non-numeric values raise a pydantic ValidationError.
        """
        if not overrides:
            return self
        overrides = _snake_case_keys(overrides)
        merged = {**self.model_dump(), **overrides}
        merged["weights"] = {**self.weights.model_dump(), **_snake_case_keys(overrides.get("weights") or {})}
        merged["boosts"] = {**self.boosts.model_dump(), **_snake_case_keys(overrides.get("boosts") or {})}
        if not overrides.get("official_domains"):
            merged["official_domains"] = list(self.official_domains)
        return RankingConfig.model_validate(merged)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def word_overlap_similarity(text_a: str, text_b: str) -> float:
    """
    Share of words in text_a that overlap (substring either way) with a
    word in text_b, relative to the longer of the two word lists.
    """
    words_a = text_a.split()
    words_b = text_b.split()
    if not words_a or not words_b:
        return 0.0

    common = [
        word for word in words_a
        if any(other in word or word in other for other in words_b)
    ]
    return len(common) / max(len(words_a), len(words_b))


def title_relevance(title: str, query: str) -> float:
    title_lower = title.lower()
    query_lower = query.lower().strip()
    query_words = query_lower.split()
    if not query_words:
        return 0.0

    score = 0.0
    if query_lower in title_lower:
        score += 0.8

    word_matches = sum(1 for word in query_words if len(word) > 2 and word in title_lower)
    score += (word_matches / len(query_words)) * 0.6

    # Long titles are less focused: full weight up to 50 chars, zero at 250
    length_penalty = min(1.0, max(0.0, 1 - (len(title) - 50) / 200))
    return _clamp(score * length_penalty)


def content_quality(content: str) -> float:
    score = 0.5

    length = len(content)
    if 100 < length < 2000:
        score += 0.2
    elif 2000 <= length < 5000:
        score += 0.1

    code_score = sum(
        min(0.1, len(pattern.findall(content)) * 0.02) for pattern in CODE_PATTERNS
    )
    score += min(0.1, code_score)

    score += sum(
        min(0.05, len(pattern.findall(content)) * 0.01) for pattern in STRUCTURE_PATTERNS
    )
    return _clamp(score)


def document_type_score(filename: str, content: str) -> float:
    filename_lower = filename.lower()
    content_lower = content.lower()

    if "api" in filename_lower or "api" in content_lower:
        return 0.9
    if "tutorial" in filename_lower or "step" in content_lower or "how to" in content_lower:
        return 0.85
    if "example" in filename_lower or "example" in content_lower:
        return 0.8
    if "config" in filename_lower or "setup" in filename_lower or "configuration" in content_lower:
        return 0.75
    if "reference" in filename_lower or "docs" in filename_lower:
        return 0.7
    return 0.6


def recency_score(metadata: Optional[Mapping[str, Any]], now: Optional[datetime] = None) -> float:
    processed_at = None
    if metadata:
        processed_at = metadata.get("processedAt") or metadata.get("processed_at")
    if not processed_at:
        return 0.5

    try:
        if isinstance(processed_at, datetime):
            processed = processed_at
        else:
            processed = datetime.fromisoformat(str(processed_at).replace("Z", "+00:00"))
    except ValueError:
        return 0.5
    if processed.tzinfo is None:
        processed = processed.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    days = (now - processed).total_seconds() / 86400

    if days < 30:
        return 1.0
    if days < 90:
        return 0.9
    if days < 180:
        return 0.8
    if days < 365:
        return 0.7
    return 0.6


def source_reliability(
    source_url: Optional[str],
    filename: Optional[str],
    official_domains: Sequence[str] = OFFICIAL_DOMAINS
) -> float:
    if not source_url and not filename:
        return 0.5

    source = (source_url or filename or "").lower()
    if any(domain in source for domain in official_domains):
        return 1.0
    if "framework_user" in source:
        return 0.95
    if "api" in source:
        return 0.9
    if "tutorial" in source:
        return 0.85
    return 0.7


def query_alignment(result: SearchResult, original_query: str) -> float:
    query_used = result.query_used.lower()
    original_lower = original_query.lower()

    if query_used == original_lower:
        return 1.0
    if word_overlap_similarity(query_used, original_lower) > 0.8:
        return 0.9
    return STRATEGY_ALIGNMENT.get(result.search_strategy, DEFAULT_STRATEGY_ALIGNMENT)


def calculate_ranking_factors(
    result: SearchResult,
    original_query: str,
    config: RankingConfig,
    now: Optional[datetime] = None
) -> RankingFactors:
    return RankingFactors(
        semantic_similarity=_clamp(result.similarity),
        title_relevance=title_relevance(result.title, original_query),
        content_quality=content_quality(result.content),
        document_type=document_type_score(result.filename, result.content),
        recency=recency_score(result.metadata, now),
        source_reliability=source_reliability(result.source_url, result.filename, config.official_domains),
        query_alignment=query_alignment(result, original_query)
    )


def weighted_score(factors: RankingFactors, weights: RankingWeights) -> float:
    return sum(
        getattr(factors, name) * getattr(weights, name)
        for name in RankingWeights.model_fields
    )


def apply_boosts(score: float, result: SearchResult, config: RankingConfig) -> float:
    """Multiply in every categorical boost the result qualifies for."""
    filename_lower = result.filename.lower()
    content_lower = result.content.lower()
    source_url = (result.source_url or "").lower()
    boosts = config.boosts

    if "framework_user" in filename_lower or any(d in source_url for d in config.official_domains):
        score *= boosts.official_docs
    if "tutorial" in filename_lower or "tutorial" in content_lower:
        score *= boosts.tutorials
    if "api" in filename_lower or "api" in content_lower:
        score *= boosts.api_docs
    if "example" in filename_lower or "example" in content_lower:
        score *= boosts.examples
    return score


class ResultRanker:
    """
    Ranks search results with configurable weights and boosts.

    Holds only the default configuration; per-call overrides never
    modify it.
    """

    def __init__(self, config: Optional[RankingConfig] = None):
        self.config = config or RankingConfig()
        logger.info("ResultRanker initialized")

    def rank_results(
        self,
        results: Sequence[SearchResult],
        original_query: str,
        config: Optional[Union[RankingConfig, Mapping[str, Any]]] = None,
        now: Optional[datetime] = None
    ) -> List[RankedResult]:
        """
        Score and re-order search results.

        Args:
            results: Candidates, in retrieval order
            original_query: The user's question
            config: A full RankingConfig, or a partial override dict
            now: Reference time for recency (defaults to the current time)

        Returns:
            List[RankedResult]: sorted by ranking score, ties keep input order
        """
        if isinstance(config, RankingConfig):
            final_config = config
        else:
            final_config = self.config.with_overrides(config)

        ranked: List[RankedResult] = []
        for index, result in enumerate(results):
            factors = calculate_ranking_factors(result, original_query, final_config, now)
            score = weighted_score(factors, final_config.weights)
            score = apply_boosts(score, result, final_config)
            ranked.append(RankedResult(
                **result.model_dump(include=set(SearchResult.model_fields)),
                ranking_score=score,
                ranking_factors=factors,
                original_rank=index
            ))

        ranked.sort(key=lambda r: r.ranking_score, reverse=True)
        logger.debug(f"Ranked {len(ranked)} results for: {original_query[:60]}")
        return ranked

    @staticmethod
    def explain_ranking(ranked_result: RankedResult) -> str:
        """Human-readable breakdown of a ranking score."""
        factors = ranked_result.ranking_factors
        lines = [
            f"Ranking Score: {ranked_result.ranking_score:.3f}",
            f"- Semantic Similarity: {factors.semantic_similarity:.3f}",
            f"- Title Relevance: {factors.title_relevance:.3f}",
            f"- Content Quality: {factors.content_quality:.3f}",
            f"- Document Type: {factors.document_type:.3f}",
            f"- Recency: {factors.recency:.3f}",
            f"- Source Reliability: {factors.source_reliability:.3f}",
            f"- Query Alignment: {factors.query_alignment:.3f}",
            f"- Search Strategy: {ranked_result.search_strategy}",
            f"- Original Rank: {ranked_result.original_rank + 1}",
        ]
        return "\n".join(lines)
