"""
Text processing utilities module.
"""

from .normalize import (
    answer_only,
    normalize_text,
    word_count,
    split_sentences,
    slugify,
    dedupe_preserving_order,
)

__all__ = [
    'answer_only',
    'normalize_text',
    'word_count',
    'split_sentences',
    'slugify',
    'dedupe_preserving_order',
]
