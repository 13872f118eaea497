from .chunking import (
    MCP_CHUNK_SIZE,
    MCP_SAFE_SIZE,
    ChunkedContent,
    chunk_content,
    create_chunk_index,
    estimate_json_size,
    needs_chunking,
    reassemble_chunks,
)
from .tokens import estimate_tokens, format_tokens

__all__ = [
    "MCP_CHUNK_SIZE",
    "MCP_SAFE_SIZE",
    "ChunkedContent",
    "chunk_content",
    "create_chunk_index",
    "estimate_json_size",
    "needs_chunking",
    "reassemble_chunks",
    "estimate_tokens",
    "format_tokens",
]
