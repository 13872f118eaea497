"""Search helpers shared by both backends: snippets, FTS query prep, LIKE escaping."""

import re
from typing import Optional

SNIPPET_LENGTH = 200
_BEFORE_MATCH = 50
_AFTER_MATCH = 150

_FTS_SPECIAL = re.compile(r"[\":*^~(){}\[\]\\]")


def extract_snippet(content: str, query: str, summary: Optional[str] = None) -> str:
    """
    Short preview of an artifact for a search hit.

    The summary wins when present. Otherwise a window around the first
    case-insensitive occurrence of the query, or the head of the content.
    """
    if summary:
        return summary[:SNIPPET_LENGTH]
    if not content:
        return ""

    position = content.lower().find(query.lower()) if query else -1
    if position < 0:
        suffix = "..." if len(content) > SNIPPET_LENGTH else ""
        return content[:SNIPPET_LENGTH] + suffix

    start = max(0, position - _BEFORE_MATCH)
    end = min(len(content), position + len(query) + _AFTER_MATCH)
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(content) else ""
    return f"{prefix}{content[start:end]}{suffix}"


def prepare_fts_query(query: str) -> str:
    """
    Turn free text into an FTS5 MATCH expression.

    FTS5 operator characters are dropped and every remaining word becomes a
    quoted prefix term, OR-ed together for partial matching.
    """
    words = _FTS_SPECIAL.sub(" ", query).split()
    if not words:
        return '""'
    return " OR ".join(f'"{word}"*' for word in words)


def escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
