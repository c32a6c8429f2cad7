"""
Text normalization for verbatim matching.
Answer-only extraction from interleaved prompt:/answer: transcripts.
"""

import re
from typing import Iterable, List

_MARKER = re.compile(r"\b(prompt:|answer:)", re.IGNORECASE)
_PUNCT = re.compile(r"[^\w\s]")
_WS = re.compile(r"\s+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def answer_only(raw_text) -> str:
    """
    Extract only the respondent's answers from an interleaved transcript.

    Spans following an "answer:" marker up to the next "prompt:" marker are
    stripped and joined with single spaces. Markers match case-insensitively.
    Text without any marker is treated as a bare answer. Never raises; any
    non-string input yields an empty string.

    Args:
        raw_text: Raw respondent text

    Returns:
        Answer-only text
    """
    if not isinstance(raw_text, str):
        return ""

    tokens = _MARKER.split(raw_text)
    if len(tokens) == 1:
        return raw_text.strip()

    spans = []
    in_answer = False
    for token in tokens:
        lowered = token.lower()
        if lowered == "answer:":
            in_answer = True
        elif lowered == "prompt:":
            in_answer = False
        elif in_answer:
            span = token.strip()
            if span:
                spans.append(span)
    return " ".join(spans)


def normalize_text(text, case_sensitive: bool = False, preserve_punctuation: bool = False) -> str:
    """
    Normalize text for containment checks.

    Lowercases unless case_sensitive, strips punctuation unless
    preserve_punctuation, collapses whitespace runs and trims. Idempotent.
    """
    if not isinstance(text, str):
        return ""
    if not case_sensitive:
        text = text.lower()
    if not preserve_punctuation:
        text = _PUNCT.sub("", text)
    return _WS.sub(" ", text).strip()


def word_count(text: str) -> int:
    """Count whitespace separated words."""
    if not text:
        return 0
    return len(text.split())


def split_sentences(text: str) -> List[str]:
    """Split text into sentences on terminal punctuation, keeping the punctuation."""
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]


def slugify(text: str, max_length: int = 40) -> str:
    """Lowercase ASCII-ish slug for generated identifiers."""
    slug = re.sub(r"[^\w\s-]", "", (text or "").lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_length].rstrip("-")


def dedupe_preserving_order(values: Iterable[str]) -> List[str]:
    """Drop empty and repeated strings, keeping first occurrences in order."""
    seen = set()
    result = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
