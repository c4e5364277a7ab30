"""Shared utility functions used across supplyscan modules."""
from __future__ import annotations

TRUNCATION_MARKER = "\n...[truncated]"


def truncate(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """Cut *text* to *limit* characters, appending *marker* when anything was dropped."""
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def chunked(items: list, size: int) -> list[list]:
    """Split *items* into consecutive lists of at most *size* elements."""
    if size < 1:
        raise ValueError("size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]
