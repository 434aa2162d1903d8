"""
Query Decomposer Module

Detects questions that bundle several distinct asks ("what is X and how
do I configure Y?") and splits them into focused, prioritized
sub-questions that can each be searched on their own. Also generates
follow-up questions from a first round of search results.

Complexity detection is a deterministic regex check; only the actual
split and the follow-ups use the LLM.
"""

import re
from typing import Any, List, Optional, Sequence

from loguru import logger

from .llm_output import parse_model_json
from .models import DecompositionResult, SubQuery
from .ollama_llm import OllamaLLM

COMPLEXITY_PATTERNS = [
    re.compile(r"\b(and|or|but|however|also|additionally|furthermore|moreover)\b", re.IGNORECASE),
    re.compile(r"\b(how to.*and|step.*step|first.*then|after.*before)\b", re.IGNORECASE),
    re.compile(r"\b(compare|difference|differ|versus|vs|between.*and)\b", re.IGNORECASE),
    re.compile(r"\b(multiple|several|various|different|all)\b", re.IGNORECASE),
    re.compile(r"\?.*\?"),
    re.compile(r"\b(explain.*how.*why|what.*when.*where)\b", re.IGNORECASE),
]

MAX_WORDS_SIMPLE = 15
MAX_SUB_QUERIES = 4
MAX_FOLLOW_UPS = 2

SUB_QUERY_CATEGORIES = ("concept", "procedure", "example", "troubleshooting", "configuration")


def is_complex_query(query: str) -> bool:
    """
    Decide whether a query likely contains more than one question.

    True when the query has more than 15 words or matches any of the
    conjunction, multi-step, comparison, plurality, multi-question or
    explain/what-when-where patterns.
    """
    if len(query.split()) > MAX_WORDS_SIMPLE:
        return True
    return any(pattern.search(query) for pattern in COMPLEXITY_PATTERNS)


def _parse_sub_queries(items: Any, limit: int) -> List[SubQuery]:
    """Validate model-supplied sub-query dicts, dropping unusable entries."""
    if not isinstance(items, list):
        return []

    sub_queries: List[SubQuery] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        question = item.get("question")
        if not isinstance(question, str) or not question.strip():
            continue

        try:
            priority = int(item.get("priority", 3))
        except (TypeError, ValueError, OverflowError):
            priority = 3
        category = item.get("category")
        if category not in SUB_QUERY_CATEGORIES:
            category = "concept"

        sub_queries.append(SubQuery(
            question=question.strip(),
            priority=max(1, min(5, priority)),
            category=category
        ))
    return sub_queries[:limit]


class QueryDecomposer:
    """
    Splits complex queries into sub-questions and proposes follow-ups.
    """

    def __init__(self, llm: OllamaLLM):
        """
        Initialize query decomposer.

        Args:
            llm: OllamaLLM instance used for decomposition and follow-ups
        """
        self._llm = llm
        logger.info("QueryDecomposer initialized")

    @staticmethod
    def _single(query: str) -> DecompositionResult:
        return DecompositionResult(
            original_query=query,
            sub_queries=[SubQuery(question=query, priority=5, category="direct")],
            is_complex=False,
            strategy="single"
        )

    def _build_decomposition_prompt(self, query: str) -> str:
        return f"""You are an expert at breaking down complex questions about Frappe Framework documentation into smaller, focused sub-questions.

Given this complex query: "{query}"

Break it down into 2-4 focused sub-questions that would help retrieve relevant information from Frappe documentation. Each sub-question should:
1. Be specific and searchable
2. Focus on one concept or procedure
3. Be answerable from documentation

Respond with a JSON object in this exact format:
{{
  "subQueries": [
    {{
      "question": "specific sub-question here",
      "priority": 1-5,
      "category": "concept|procedure|example|troubleshooting|configuration"
    }}
  ]
}}

Categories:
- concept: Understanding what something is
- procedure: How to do something step-by-step
- example: Code examples or practical implementations
- troubleshooting: Solving problems or errors
- configuration: Setup or configuration instructions

Priority (1-5): 5 = most important for answering the original query, 1 = least important
"""

    async def decompose_query(self, query: str) -> DecompositionResult:
        """
        Split a query into sub-questions if it is complex.

        Any LLM or parsing failure falls back to the single-query result.
        """
        if not is_complex_query(query):
            return self._single(query)

        logger.info(f"Decomposing complex query: {query[:80]}")
        try:
            response = await self._llm.acomplete(
                self._build_decomposition_prompt(query),
                temperature=0.1,
                max_tokens=1000
            )
            raw_output = str(response.text).strip()
            logger.debug(f"LLM decomposition response: {raw_output[:500]}")
        except Exception as e:
            logger.error(f"Error in query decomposition: {e}")
            return self._single(query)

        parsed = parse_model_json(raw_output, {}, expected_type=dict)
        sub_queries = _parse_sub_queries(
            parsed.get("subQueries", parsed.get("sub_queries")), MAX_SUB_QUERIES
        )
        if not sub_queries:
            logger.warning("Decomposition produced no usable sub-queries, using original query")
            return self._single(query)

        logger.info(f"Query decomposed into {len(sub_queries)} sub-queries")
        return DecompositionResult(
            original_query=query,
            sub_queries=sub_queries,
            is_complex=True,
            strategy="decomposed"
        )

    async def generate_follow_up_queries(
        self,
        original_query: str,
        search_results: Sequence[Any],
        conversation_history: Optional[List[str]] = None
    ) -> List[SubQuery]:
        """
        Propose 1-2 follow-up questions based on the top search results.

        Args:
            original_query: The user's question
            search_results: Current results (title/content attributes)
            conversation_history: Optional prior user turns

        Returns:
            List[SubQuery]: follow-ups, empty on failure or without results
        """
        if not search_results:
            return []

        result_summary = "\n".join(
            f"- {result.title}: {result.content[:200]}..."
            for result in search_results[:3]
        )
        history_block = ""
        if conversation_history:
            history_block = "\nEarlier in the conversation:\n" + "\n".join(
                f"- {turn}" for turn in conversation_history[-3:]
            ) + "\n"

        prompt = f"""Based on the original query: "{original_query}"
{history_block}
And these search results:
{result_summary}

Generate 1-2 follow-up questions that could help find additional relevant information. These should:
1. Address gaps in the current results
2. Seek more specific or detailed information
3. Look for related concepts or procedures

Respond with JSON:
{{
  "followUpQueries": [
    {{
      "question": "follow-up question here",
      "priority": 1-5,
      "category": "concept|procedure|example|troubleshooting|configuration"
    }}
  ]
}}
"""
        try:
            response = await self._llm.acomplete(prompt, temperature=0.1, max_tokens=1000)
            raw_output = str(response.text).strip()
        except Exception as e:
            logger.error(f"Error generating follow-up queries: {e}")
            return []

        parsed = parse_model_json(raw_output, {}, expected_type=dict)
        return _parse_sub_queries(
            parsed.get("followUpQueries", parsed.get("follow_up_queries")), MAX_FOLLOW_UPS
        )
