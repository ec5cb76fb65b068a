"""
Token counting and truncation utilities using tiktoken.
"""

from functools import lru_cache
from typing import Optional
import tiktoken

from study_buddy.shared.config import settings


@lru_cache(maxsize=8)
def get_encoding(model: Optional[str] = None) -> tiktoken.Encoding:
    """
    Get tiktoken encoding for a model.

    Args:
        model: Model name (e.g., "gpt-4o-mini"). If None, uses the OpenAI model from settings

    Returns:
        tiktoken Encoding object
    """
    model = model or settings.llm.openai_model

    try:
        encoding = tiktoken.encoding_for_model(model)
    except KeyError:
        # Fallback to cl100k_base for unknown models
        encoding = tiktoken.get_encoding("cl100k_base")

    return encoding


def count_tokens(text: str, model: Optional[str] = None) -> int:
    """Count tokens in text."""
    if not text:
        return 0
    encoding = get_encoding(model)
    return len(encoding.encode(text))


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    model: Optional[str] = None,
    suffix: str = "..."
) -> str:
    """
    Truncate text to maximum token count.

    Args:
        text: Text to truncate
        max_tokens: Maximum number of tokens
        model: Model name for encoding selection
        suffix: Suffix to append if truncated

    Returns:
        Truncated text
    """
    encoding = get_encoding(model)
    tokens = encoding.encode(text)

    if len(tokens) <= max_tokens:
        return text

    if suffix:
        suffix_tokens = count_tokens(suffix, model)
        if max_tokens > suffix_tokens:
            return encoding.decode(tokens[:max_tokens - suffix_tokens]) + suffix
        return suffix

    return encoding.decode(tokens[:max_tokens])


def estimate_tokens(text: str) -> int:
    """
    Quick token estimation (4 chars per token approximation).
    Use for rough estimates when exact count is expensive.
    """
    return len(text) // 4
