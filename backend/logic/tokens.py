"""
Token estimation helpers.

Uses the chars/4 rule of thumb, which is close enough for budgeting context
across common LLM tokenizers.
"""

CHARS_PER_TOKEN = 4


def estimate_tokens(chars: int) -> int:
    return max(0, int(chars)) // CHARS_PER_TOKEN


def format_tokens(tokens: int) -> str:
    """`1234` -> `1.2k`; values under 1,000 are printed as-is."""
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)
