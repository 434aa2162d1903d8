"""
Retrieval Configuration

This module loads settings for the Frappe docs assistant from environment
variables (and the project's .env file) and configures loguru.

All values are read once at import time. Components accept explicit keyword
arguments and only fall back to these constants as defaults, so tests and
scripts can override anything without touching the environment.
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

# Load environment variables from .env file in the project root
env_path = Path(__file__).resolve().parent.parent.parent / '.env'
load_dotenv(env_path)

# Language model (Ollama)
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434")
LLM_MODEL = os.getenv("LLM_MODEL", "mistral:7b")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.3"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "300"))

# Embeddings
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "BAAI/bge-large-en-v1.5")
EMBEDDING_DEVICE = os.getenv("EMBEDDING_DEVICE", "cpu")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1024"))

# Vector store (Qdrant)
QDRANT_HOST = os.getenv("QDRANT_HOST", "localhost")
QDRANT_PORT = int(os.getenv("QDRANT_PORT", "6333"))
QDRANT_COLLECTION = os.getenv("QDRANT_COLLECTION", "frappe_docs")

# Retrieval pipeline
DOMAIN_LABEL = os.getenv("DOMAIN_LABEL", "frappe framework")
# 0 disables the per-search timeout
SEARCH_TIMEOUT_SECONDS = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "30"))
MAX_ITERATIONS = int(os.getenv("MAX_ITERATIONS", "3"))
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.75"))
CONVERGENCE_OVERLAP = float(os.getenv("CONVERGENCE_OVERLAP", "0.6"))
CONVERGENCE_WINDOW = int(os.getenv("CONVERGENCE_WINDOW", "5"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """
    Replace loguru's default sink with a stderr sink at the given level.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ...)
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
