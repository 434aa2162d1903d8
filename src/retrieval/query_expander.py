"""
Query Expander Module

This module provides query expansion to improve RAG retrieval.
It combines three sources of alternative phrasings:

- Rule-based: a Frappe terminology thesaurus plus simple morphological
  variants (plural/singular, snake_case and kebab-case splitting)
- Model-based: the LLM proposes 3-4 typed alternatives with a confidence
- Contextual: fixed Frappe-qualified and "documentation" variants

Example:
    "How do I add a custom field?"
    → "frappe framework How do I add a custom field?",
      "How do I add a custom field? customization customize custom field",
      "Adding a DocField to an existing DocType", ...
"""

import math
from typing import Dict, Iterable, List, Optional

from loguru import logger

from . import config
from .llm_output import parse_model_json
from .models import ExpandedQuery, QueryExpansionResult
from .ollama_llm import OllamaLLM

# Frappe-specific terminology: term -> related phrases
FRAPPE_TERMS: Dict[str, List[str]] = {
    "form": ["doctype", "document", "form view", "desk form"],
    "list": ["listview", "list view", "report", "data table"],
    "field": ["docfield", "form field", "document field", "field type"],
    "script": ["client script", "server script", "custom script", "js script"],
    "hook": ["hooks.py", "app hooks", "frappe hooks", "event hooks"],
    "api": ["rest api", "server api", "frappe api", "web api"],
    "database": ["db", "mariadb", "mysql", "database query"],
    "permission": ["role", "user permission", "document permission", "access control"],
    "workflow": ["workflow state", "workflow action", "approval workflow"],
    "report": ["query report", "script report", "report builder", "custom report"],
    "print": ["print format", "pdf", "print template", "document printing"],
    "email": ["email template", "notification", "email alert", "communication"],
    "custom": ["customization", "customize", "custom field", "custom doctype"],
    "bench": ["frappe bench", "bench command", "site management"],
    "app": ["frappe app", "application", "custom app", "app development"],
    "site": ["frappe site", "multi-tenant", "site configuration"],
    "migration": ["database migration", "schema migration", "data migration"],
    "translation": ["language", "locale", "internationalization", "i18n"],
}

# Templates for context-flavoured search variations
CONTEXT_TEMPLATES: Dict[str, str] = {
    "troubleshooting": "error {query} fix solution problem",
    "tutorial": "how to {query} step by step guide tutorial",
    "api": "{query} api method function code example",
    "configuration": "{query} setup configure settings configuration",
}

EXPANSION_TYPES = ("synonym", "technical", "conceptual", "procedural", "contextual")
MAX_EXPANSIONS = 6
MAX_VARIATIONS = 4


def _unique(items: Iterable[str]) -> List[str]:
    """Deduplicate while preserving first-seen order."""
    return list(dict.fromkeys(items))


class QueryExpander:
    """
    Expands user queries with synonyms and semantically related phrases.

    The thesaurus and domain label are read-only configuration; the
    expander keeps no per-request state and can be shared freely.
    """

    def __init__(
        self,
        llm: OllamaLLM,
        domain_terms: Optional[Dict[str, List[str]]] = None,
        domain_label: str = config.DOMAIN_LABEL,
        max_expansions: int = MAX_EXPANSIONS
    ):
        """
        Initialize query expander.

        Args:
            llm: OllamaLLM instance for generating expansions
            domain_terms: Thesaurus of term -> variants (default: Frappe terms)
            domain_label: Prefix used for the domain-qualified variant
            max_expansions: Maximum number of expansions returned
        """
        self._llm = llm
        self._domain_terms = domain_terms if domain_terms is not None else FRAPPE_TERMS
        self._domain_label = domain_label
        self._max_expansions = max_expansions

        logger.info(f"QueryExpander initialized (max_expansions={max_expansions})")

    def extract_domain_terms(self, query: str) -> List[str]:
        """
        Find thesaurus entries related to the query.

        A key found in the query contributes its variants; a variant found
        in the query contributes its key and the sibling variants.
        """
        query_lower = query.lower()
        found: List[str] = []

        for key, variations in self._domain_terms.items():
            if key in query_lower:
                found.extend(variations)

            for variation in variations:
                if variation.lower() in query_lower:
                    found.append(key)
                    found.extend(v for v in variations if v != variation)
                    break

        return _unique(found)

    @staticmethod
    def generate_keyword_variations(query: str) -> List[str]:
        """
        Naive morphological variants of each query word.

        Plural/singular by adding or removing a trailing "s", and
        snake_case / kebab-case words split into spaces or joined.
        """
        variations: List[str] = []

        for word in query.lower().split():
            if word.endswith("s") and len(word) > 3:
                variations.append(word[:-1])
            elif not word.endswith("s"):
                variations.append(word + "s")

            for separator in ("_", "-"):
                if separator in word:
                    variations.append(word.replace(separator, " "))
                    variations.append(word.replace(separator, ""))

        return _unique(variations)

    def _build_expansion_prompt(self, query: str) -> str:
        return f"""You are an expert in Frappe Framework documentation. Given a user query, generate 3-4 alternative ways to express the same question that would help find relevant documentation.

Original query: "{query}"

Generate variations that:
1. Use different technical terminology
2. Rephrase the question structure
3. Add context about Frappe Framework
4. Use synonyms and related concepts

Respond with JSON:
{{
  "expansions": [
    {{
      "expanded": "alternative query here",
      "type": "synonym|technical|conceptual|procedural|contextual",
      "confidence": 0.8
    }}
  ]
}}

Types:
- synonym: Using different words with same meaning
- technical: Using more technical Frappe terminology
- conceptual: Focusing on the underlying concept
- procedural: Focusing on the process/steps
- contextual: Adding Frappe-specific context
"""

    async def expand_query_with_llm(self, query: str) -> List[ExpandedQuery]:
        """
        Ask the LLM for alternative phrasings.

        Never raises: an LLM or parsing failure means no model expansions.
        """
        try:
            response = await self._llm.acomplete(
                self._build_expansion_prompt(query),
                temperature=0.3,
                max_tokens=800
            )
            raw_output = str(response.text).strip()
            logger.debug(f"LLM expansion response: {raw_output[:500]}")
        except Exception as e:
            logger.error(f"LLM query expansion failed: {e}")
            return []

        parsed = parse_model_json(raw_output, None, expected_type=(dict, list))
        if isinstance(parsed, dict):
            parsed = parsed.get("expansions")
        if not isinstance(parsed, list):
            return []

        expansions: List[ExpandedQuery] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            expanded = item.get("expanded")
            if not isinstance(expanded, str) or not expanded.strip():
                continue
            expansion_type = item.get("type")
            if expansion_type not in EXPANSION_TYPES:
                expansion_type = "synonym"
            expansions.append(ExpandedQuery(
                original=query,
                expanded=expanded.strip(),
                type=expansion_type,
                confidence=_as_confidence(item.get("confidence"))
            ))
        return expansions

    async def expand_query(self, query: str) -> QueryExpansionResult:
        """
        Expand a user question into ranked alternative phrasings.

        Args:
            query: Original user question

        Returns:
            QueryExpansionResult with at most max_expansions expansions,
            sorted by confidence (highest first)
        """
        logger.info(f"Expanding query: {query[:80]}")

        technical_terms = self.extract_domain_terms(query)
        keyword_variations = self.generate_keyword_variations(query)
        llm_expansions = await self.expand_query_with_llm(query)

        rule_based: List[ExpandedQuery] = []
        if technical_terms:
            rule_based.append(ExpandedQuery(
                original=query,
                expanded=f"{query} {' '.join(technical_terms[:3])}",
                type="technical",
                confidence=0.7
            ))
        if keyword_variations:
            rule_based.append(ExpandedQuery(
                original=query,
                expanded=f"{query} {' '.join(keyword_variations[:2])}",
                type="synonym",
                confidence=0.6
            ))

        contextual = [
            ExpandedQuery(
                original=query,
                expanded=f"{self._domain_label} {query}",
                type="contextual",
                confidence=0.8
            ),
            ExpandedQuery(
                original=query,
                expanded=f"{query} documentation",
                type="contextual",
                confidence=0.7
            ),
        ]

        seen = set()
        unique_expansions: List[ExpandedQuery] = []
        for expansion in llm_expansions + rule_based + contextual:
            key = expansion.expanded.lower()
            if key in seen:
                continue
            seen.add(key)
            unique_expansions.append(expansion)

        # sorted() is stable, so equal confidences keep merge order
        ranked = sorted(unique_expansions, key=lambda e: e.confidence, reverse=True)

        result = QueryExpansionResult(
            original_query=query,
            expanded_queries=ranked[:self._max_expansions],
            keywords=keyword_variations,
            technical_terms=technical_terms
        )
        logger.info(f"Query expanded: {len(result.expanded_queries)} variations generated")
        return result

    async def generate_search_variations(self, query: str, context: str) -> List[str]:
        """
        Produce context-flavoured variants of a query.

        Args:
            query: Original user question
            context: One of troubleshooting, tutorial, api, configuration

        Returns:
            Up to 4 search strings, the templated query first

        Raises:
            ValueError: for an unknown context
        """
        template = CONTEXT_TEMPLATES.get(context)
        if template is None:
            raise ValueError(f"Unknown search variation context: {context}")

        contextual_query = template.format(query=query)
        expansion = await self.expand_query(contextual_query)

        variations = [contextual_query] + [eq.expanded for eq in expansion.expanded_queries]
        return variations[:MAX_VARIATIONS]


def _as_confidence(value) -> float:
    """Coerce a model-supplied confidence into [0, 1], defaulting to 0.5."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.5
    if not math.isfinite(confidence):
        return 0.5
    return max(0.0, min(1.0, confidence))
