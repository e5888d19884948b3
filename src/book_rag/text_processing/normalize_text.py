"""Markup stripping and whitespace normalization for chapter bodies."""

import html
import re

from book_rag.core.logging import get_logger

logger = get_logger(__name__)

# Regex patterns compiled once for efficiency
_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Reduce a chapter body to a single line of plain text.

    Steps:
        1. Replace every markup tag with a space.
        2. Decode HTML entities.
        3. Collapse whitespace runs (newlines included) to one space and trim.

    Args:
        value: Raw chapter body, possibly HTML.

    Returns:
        Plain text.
    """
    if value == "":
        return value

    text = _TAG_PATTERN.sub(" ", value)
    text = html.unescape(text)
    text = _WHITESPACE_PATTERN.sub(" ", text).strip()

    logger.debug("Normalized text length from %d to %d chars", len(value), len(text))
    return text
