"""
Unit Tests for Query Expansion

Tests the Frappe thesaurus lookup, morphological variants, model-based
expansions and context variations.
"""

import json

import pytest

from src.retrieval.query_expander import MAX_EXPANSIONS, QueryExpander
from src.tests.fakes import EXPANSION_PROMPT, FakeLLM


class TestRuleBasedExpansion:
    """Tests for the deterministic expansion sources."""

    def test_domain_term_key_found(self, fake_llm):
        expander = QueryExpander(fake_llm)
        terms = expander.extract_domain_terms("How do I write a hook?")

        assert "hooks.py" in terms
        assert "event hooks" in terms

    def test_domain_term_variation_found(self, fake_llm):
        expander = QueryExpander(fake_llm)
        terms = expander.extract_domain_terms("How do I tune mariadb?")

        # "db" matches first, so its key and siblings are added but not itself
        assert "database" in terms
        assert "mysql" in terms
        assert "db" not in terms

    def test_terms_are_unique(self, fake_llm):
        expander = QueryExpander(fake_llm)
        terms = expander.extract_domain_terms("custom field on a form")
        assert len(terms) == len(set(terms))

    def test_keyword_variations(self):
        variations = QueryExpander.generate_keyword_variations("Fields custom_field")

        assert "field" in variations
        assert "custom_fields" in variations
        assert "custom field" in variations
        assert "customfield" in variations

    def test_short_plural_not_stripped(self):
        assert "ha" not in QueryExpander.generate_keyword_variations("has")


class TestExpandQuery:
    """Tests for the merged expansion result."""

    @pytest.mark.asyncio
    async def test_fallback_without_model_output(self, fake_llm):
        """Unparseable model output still yields rule-based and contextual expansions."""
        expander = QueryExpander(fake_llm)
        result = await expander.expand_query("add a custom field")

        expanded = [eq.expanded for eq in result.expanded_queries]
        assert "frappe framework add a custom field" in expanded
        assert "add a custom field documentation" in expanded
        assert result.expanded_queries[0].confidence == 0.8

    @pytest.mark.asyncio
    async def test_model_expansions_sorted_and_capped(self):
        reply = json.dumps({"expansions": [
            {"expanded": "create DocField on DocType", "type": "technical", "confidence": 0.95},
            {"expanded": "customize form fields", "type": "synonym", "confidence": 0.4},
            {"expanded": "add a custom field documentation", "type": "contextual", "confidence": 0.9},
            {"expanded": "", "type": "synonym", "confidence": 0.9},
            {"expanded": "extend a form", "type": "unknown", "confidence": "high"},
        ]})
        expander = QueryExpander(FakeLLM({EXPANSION_PROMPT: reply}))
        result = await expander.expand_query("add a custom field")

        confidences = [eq.confidence for eq in result.expanded_queries]
        assert confidences == sorted(confidences, reverse=True)
        assert len(result.expanded_queries) <= MAX_EXPANSIONS
        assert result.expanded_queries[0].expanded == "create DocField on DocType"

        lowered = [eq.expanded.lower() for eq in result.expanded_queries]
        assert len(lowered) == len(set(lowered))

    @pytest.mark.asyncio
    async def test_bad_types_and_confidence_are_normalised(self):
        reply = json.dumps([{"expanded": "extend a form", "type": "unknown", "confidence": "high"}])
        expander = QueryExpander(FakeLLM({EXPANSION_PROMPT: reply}))
        expansions = await expander.expand_query_with_llm("add a custom field")

        assert len(expansions) == 1
        assert expansions[0].type == "synonym"
        assert expansions[0].confidence == 0.5

    @pytest.mark.asyncio
    async def test_non_finite_confidence_defaults(self):
        reply = '[{"expanded": "extend a form", "type": "synonym", "confidence": Infinity}]'
        expander = QueryExpander(FakeLLM({EXPANSION_PROMPT: reply}))
        expansions = await expander.expand_query_with_llm("add a custom field")

        assert expansions[0].confidence == 0.5

    @pytest.mark.asyncio
    async def test_model_failure_is_not_fatal(self):
        expander = QueryExpander(FakeLLM({EXPANSION_PROMPT: RuntimeError("ollama down")}))
        result = await expander.expand_query("print format")

        assert result.original_query == "print format"
        assert result.expanded_queries


class TestSearchVariations:
    """Tests for context-flavoured variations."""

    @pytest.mark.asyncio
    async def test_troubleshooting_template_first(self, fake_llm):
        expander = QueryExpander(fake_llm)
        variations = await expander.generate_search_variations("save fails", "troubleshooting")

        assert variations[0] == "error save fails fix solution problem"
        assert 1 < len(variations) <= 4

    @pytest.mark.asyncio
    async def test_unknown_context_raises(self, fake_llm):
        expander = QueryExpander(fake_llm)
        with pytest.raises(ValueError):
            await expander.generate_search_variations("save fails", "poetry")
