"""
Provides common, stateless utility functions used across the application.

This module is a collection of simple, reusable helper functions that do not
fit into a more specific module and have no external dependencies other than
standard Python libraries.
"""
import math

# Average characters per token across English and CJK text.
CHARS_PER_TOKEN = 2.5


def estimate_tokens(text: str | None) -> int:
    """
    Estimates the token count of a piece of text.

    The estimate is deterministic and monotone in the text length, which is all
    the trimming logic needs; it is not an exact tokenizer.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
