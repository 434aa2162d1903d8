"""
Run one documentation search (or a full answer) from the command line.

Prints the ranked results with their ranking breakdown, followed by the
search diagnostics. Requires Qdrant and Ollama to be reachable.

Usage:
    python scripts/search_docs.py "How do I add a custom field?"
    python scripts/search_docs.py "permission error on save" --no-refine --limit 5
    python scripts/search_docs.py "What is a DocType?" --answer
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.retrieval.config import LOG_LEVEL, configure_logging
from src.retrieval.models import SearchOptions
from src.retrieval.pipeline import FrappeDocsRAGPipeline
from src.retrieval.ranking import ResultRanker


async def run(args: argparse.Namespace) -> int:
    pipeline = FrappeDocsRAGPipeline()
    try:
        if args.answer:
            answer = await pipeline.query(args.query)
            print("\nAnswer:")
            print("=" * 80)
            print(answer.answer)
            print("\nSources:")
            for index, source in enumerate(answer.sources, 1):
                print(f"  {index}. {source.title} ({source.search_strategy}, score {source.ranking_score:.3f})")
                if source.source_url:
                    print(f"     {source.source_url}")
            metadata = answer.search_metadata
        else:
            options = SearchOptions(
                limit=args.limit,
                enable_iterative_refinement=not args.no_refine,
                max_iterations=args.max_iterations,
                confidence_threshold=args.confidence
            )
            response = await pipeline.search(args.query, options)
            print(f"\nResults for: {args.query}")
            print("=" * 80)
            for index, result in enumerate(response.results, 1):
                print(f"\n{index}. {result.title} [{result.filename}]")
                print(ResultRanker.explain_ranking(result))
                print("-" * 80)
            metadata = response.metadata

        print("\nSearch metadata:")
        print(f"  Queries used: {len(metadata.queries_used)}")
        for query in metadata.queries_used:
            print(f"    - {query}")
        print(f"  Iterations performed: {metadata.iterations_performed}")
        print(f"  Final confidence: {metadata.final_confidence:.3f}")
        print(f"  Convergence reached: {metadata.convergence_reached}")
        print(f"  Results considered: {metadata.total_results_considered}")
        print(f"  Processing time: {metadata.processing_time_ms:.0f}ms")
        if metadata.failure_reason:
            print(f"  Failure: {metadata.failure_reason}")
            return 1
        return 0
    finally:
        await pipeline.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Search the Frappe documentation")
    parser.add_argument("query", help="Question to search for")
    parser.add_argument("--limit", type=int, default=10, help="Number of results (default: 10)")
    parser.add_argument("--no-refine", action="store_true", help="Disable iterative refinement")
    parser.add_argument("--max-iterations", type=int, default=3, help="Refinement rounds (default: 3)")
    parser.add_argument("--confidence", type=float, default=0.75, help="Confidence that ends refinement")
    parser.add_argument("--answer", action="store_true", help="Generate an answer instead of listing results")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Log level (default: from LOG_LEVEL)")

    args = parser.parse_args()
    configure_logging(args.log_level)
    sys.exit(asyncio.run(run(args)))
