"""Fallback excerpt selection when the generator offers no usable evidence."""

import logging
from typing import Mapping, Optional, Sequence

from ..models import Excerpt, SourceRecord
from ..text.normalize import split_sentences, word_count
from .verbatim import VerbatimValidator

logger = logging.getLogger(__name__)


def select_fallback_excerpt(
    source_ids: Sequence[str],
    sources: Mapping[str, SourceRecord],
    validator: VerbatimValidator,
) -> Optional[Excerpt]:
    """
    Pick a literal sentence from one of the given respondents.

    Prefers the first sentence meeting the minimum word count; otherwise the
    first non-empty sentence. Only sentences that pass the verbatim check are
    returned, so the result is never fabricated.

    Args:
        source_ids: Respondents assigned to the category, in task order
        sources: source_id -> record
        validator: Validator whose normalization rules the excerpt must satisfy

    Returns:
        A verified fallback Excerpt, or None when no respondent has usable text
    """
    short_candidate = None
    for source_id in source_ids:
        record = sources.get(source_id)
        if record is None:
            continue
        for sentence in split_sentences(record.answer_text):
            if not validator.is_verbatim(sentence, record):
                continue
            if word_count(sentence) >= validator.config.min_words:
                return Excerpt(text=sentence, source_id=source_id, verified=True, fallback=True)
            if short_candidate is None:
                short_candidate = Excerpt(text=sentence, source_id=source_id, verified=True, fallback=True)

    if short_candidate is None:
        logger.debug(f"No fallback sentence available among {len(source_ids)} respondents")
    return short_candidate
