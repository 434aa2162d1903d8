"""
Model Output Parsing

Language model responses are free text that usually, but not always,
contain the JSON we asked for. Every call site in the retrieval pipeline
goes through parse_model_json() so malformed output degrades the same way
everywhere:

1. strip markdown code fences
2. try to parse the whole response
3. try the first balanced {...} or [...] substring
4. give up and return the caller's fallback
"""

import json
import re
from typing import Any, Optional, Tuple, Type, Union

from loguru import logger

_FENCE_PATTERN = re.compile(r"```[a-zA-Z]*\s*")


def strip_code_fences(text: str) -> str:
    """Remove ``` / ```json fences and surrounding whitespace."""
    return _FENCE_PATTERN.sub("", text).strip()


def extract_bracketed(text: str, open_char: str, close_char: str) -> Optional[str]:
    """
    Return the first balanced substring delimited by open_char/close_char.

    Brackets inside JSON string literals are ignored. Returns None when no
    opening bracket exists or it is never closed.
    """
    start = text.find(open_char)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def parse_model_json(
    text: Optional[str],
    fallback: Any,
    expected_type: Optional[Union[Type, Tuple[Type, ...]]] = None
) -> Any:
    """
    Parse JSON out of a model response, never raising.

    Args:
        text: Raw model output
        fallback: Value returned when nothing parseable is found
        expected_type: If given, a parsed value of another type is rejected

    Returns:
        The parsed JSON value, or fallback
    """
    if not text or not text.strip():
        return fallback

    cleaned = strip_code_fences(text)

    candidates = [cleaned]
    bracketed = [
        (cleaned.find(open_char), open_char, close_char)
        for open_char, close_char in (("{", "}"), ("[", "]"))
    ]
    # Whichever structure starts first in the text is tried first
    for position, open_char, close_char in sorted(bracketed):
        if position == -1:
            continue
        snippet = extract_bracketed(cleaned, open_char, close_char)
        if snippet:
            candidates.append(snippet)

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except (ValueError, TypeError):
            continue
        if expected_type is not None and not isinstance(value, expected_type):
            continue
        return value

    logger.debug(f"Could not parse model output as JSON: {text[:200]}")
    return fallback
