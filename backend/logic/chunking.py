"""
Content chunking for oversized artifacts.

Content whose JSON encoding would exceed the safe transport size is split
into ordered parts at natural boundaries (paragraphs, lines, sentences) and
carries an MD5 checksum of the original text so reassembly can be verified.
The checksum is an integrity check, not a security measure.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from storage.errors import IntegrityError, ValidationError

# Conservative limit for a single tool payload.
MCP_SAFE_SIZE = 3500

# Target size for each part.
MCP_CHUNK_SIZE = 3000

_SENTENCE_ENDS = (". ", "! ", "? ")


@dataclass(frozen=True)
class ChunkedContent:
    chunks: List[str] = field(default_factory=list)
    total_size: int = 0
    chunk_count: int = 0
    checksum: str = ""


def estimate_json_size(content: str) -> int:
    """Length of `content` once encoded as a JSON string (quotes and escapes included)."""
    return len(json.dumps(content, ensure_ascii=False))


def needs_chunking(content: str, safe_size: int = MCP_SAFE_SIZE) -> bool:
    if not content:
        return False
    return estimate_json_size(content) > safe_size


def content_checksum(content: str) -> str:
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def _last_before(text: str, needle: str, limit: int) -> int:
    """Index of the last `needle` starting at or before `limit`, or -1."""
    return text.rfind(needle, 0, limit + len(needle))


def _find_split_point(remaining: str, chunk_size: int) -> int:
    half = chunk_size / 2

    paragraph = _last_before(remaining, "\n\n", chunk_size)
    if paragraph > half:
        return paragraph + 2

    line = _last_before(remaining, "\n", chunk_size)
    if line > half:
        return line + 1

    sentence = max(_last_before(remaining, end, chunk_size) for end in _SENTENCE_ENDS)
    if sentence > half:
        return sentence + 2

    return chunk_size


def chunk_content(content: str, chunk_size: int = MCP_CHUNK_SIZE) -> ChunkedContent:
    """
    Split content into parts of roughly `chunk_size` characters.

    Content that does not need chunking comes back as a single part. Every cut
    consumes more than half the window, so the loop always makes progress and
    text with no break points degrades to hard cuts at `chunk_size`.
    """
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
        raise ValidationError("chunk_size must be a positive integer", field="chunk_size")

    checksum = content_checksum(content)
    if not needs_chunking(content):
        return ChunkedContent(
            chunks=[content],
            total_size=len(content),
            chunk_count=1,
            checksum=checksum,
        )

    chunks: List[str] = []
    remaining = content
    while remaining:
        if len(remaining) <= chunk_size:
            chunks.append(remaining)
            break
        split_point = _find_split_point(remaining, chunk_size)
        chunks.append(remaining[:split_point])
        remaining = remaining[split_point:]

    return ChunkedContent(
        chunks=chunks,
        total_size=len(content),
        chunk_count=len(chunks),
        checksum=checksum,
    )


def reassemble_chunks(chunks: Sequence[str], checksum: Optional[str] = None) -> str:
    """Concatenate parts in order; raise IntegrityError if `checksum` does not match."""
    content = "".join(chunks)
    if checksum:
        actual = content_checksum(content)
        if actual != checksum:
            raise IntegrityError(checksum, actual)
    return content


def create_chunk_index(
    name: str,
    chunked: ChunkedContent,
    artifact_names: Sequence[str],
) -> str:
    """Human-readable index document listing the parts of a chunked artifact."""
    lines = [
        f"# {name} (Chunked Document)",
        "",
        f"This document has been split into {chunked.chunk_count} parts due to size constraints.",
        "",
        "## Metadata",
        f"- **Total Size**: {chunked.total_size:,} characters",
        f"- **Checksum**: {chunked.checksum}",
        f"- **Parts**: {chunked.chunk_count}",
        "",
        "## Parts",
    ]
    lines.extend(f"{position}. {part}" for position, part in enumerate(artifact_names, start=1))
    lines.extend(
        [
            "",
            "## Reassembly",
            "To read this document, load all parts in order and concatenate them.",
        ]
    )
    return "\n".join(lines)


def parse_chunk_index(index_content: str) -> tuple[Optional[str], List[str]]:
    """Recover `(checksum, part_names)` from a document built by `create_chunk_index`."""
    checksum: Optional[str] = None
    parts: List[str] = []
    in_parts = False
    for raw_line in index_content.splitlines():
        line = raw_line.strip()
        if line.startswith("- **Checksum**:"):
            checksum = line.split(":", 1)[1].strip() or None
        elif line == "## Parts":
            in_parts = True
        elif line.startswith("## "):
            in_parts = False
        elif in_parts and line:
            number, _, part_name = line.partition(". ")
            if number.isdigit() and part_name:
                parts.append(part_name)
    return checksum, parts
