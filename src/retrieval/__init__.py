"""
Retrieval Module for the Frappe Docs Assistant

This module contains the multi-stage RAG retrieval components:
- Query expansion and decomposition
- Multi-strategy vector search over Qdrant
- Seven-factor result ranking
- Gap analysis and iterative refinement
- Answer generation with Ollama

Search flow:
    question -> strategies -> parallel searches -> dedup -> rank
             -> (gap analysis -> follow-up searches -> merge)* -> results
"""

from .models import SearchOptions, SearchResponse, ChatAnswer, ChatMessage
from .query_expander import QueryExpander
from .query_decomposer import QueryDecomposer
from .multi_query import MultiStrategyRetriever, SearchUnavailableError
from .ranking import RankingConfig, ResultRanker
from .refinement import GapAnalyzer, IterativeRefinementController
from .search_engine import FrappeDocsSearchEngine
from .pipeline import FrappeDocsRAGPipeline

__all__ = [
    'SearchOptions',
    'SearchResponse',
    'ChatAnswer',
    'ChatMessage',
    'QueryExpander',
    'QueryDecomposer',
    'MultiStrategyRetriever',
    'SearchUnavailableError',
    'RankingConfig',
    'ResultRanker',
    'GapAnalyzer',
    'IterativeRefinementController',
    'FrappeDocsSearchEngine',
    'FrappeDocsRAGPipeline'
]
