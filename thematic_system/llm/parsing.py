"""
Parse raw generator text into typed stage outputs.

Generators wrap JSON in markdown fences, prepend chatter, and mix camelCase
with snake_case keys; all of that is tolerated here. Anything that still
cannot be read raises ValidationError.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pydantic

from ..exceptions import ValidationError
from ..models import Assignment, Category, Excerpt, Summary
from ..text.normalize import slugify

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
_JSON_BLOCK = re.compile(r"(\{.*\}|\[.*\])", re.DOTALL)


def _first(data: Dict[str, Any], *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def extract_json(text: str) -> Any:
    """Extract the JSON value from a generator response."""
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Empty generator response")
    cleaned = _FENCE.sub("", text.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        match = _JSON_BLOCK.search(cleaned)
        if not match:
            raise ValidationError(f"No JSON found in generator response: {e}") from e
        try:
            return json.loads(match.group())
        except json.JSONDecodeError as inner:
            raise ValidationError(f"Unparseable JSON in generator response: {inner}") from inner


def _as_list(data: Any, *keys) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        value = _first(data, *keys)
        if isinstance(value, list):
            return value
    raise ValidationError(f"Expected a list under one of {', '.join(keys)}")


def parse_categories(text: str, min_count: int = 1, max_count: int = 100) -> Tuple[Optional[str], List[Category]]:
    """
    Parse a category-generation response.

    Args:
        text: Raw generator output
        min_count: Fewest categories accepted
        max_count: Most categories accepted

    Returns:
        (derived question or None, categories with unique ids)
    """
    data = extract_json(text)
    raw_categories = _as_list(data, "categories", "themes")
    question = None
    if isinstance(data, dict):
        question = _first(data, "derivedQuestion", "derived_question", "question")
        if question is not None and not isinstance(question, str):
            question = str(question)

    categories = []
    used_ids = set()
    for index, raw in enumerate(raw_categories):
        if not isinstance(raw, dict):
            raise ValidationError(f"Category {index + 1} is not an object")
        title = raw.get("title")
        description = raw.get("description")
        for name, value in (("title", title), ("description", description)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Category {index + 1} missing required field '{name}'")

        category_id = _first(raw, "id", "categoryId", "category_id")
        category_id = str(category_id).strip() if category_id is not None else ""
        if not category_id:
            category_id = f"category-{index + 1}-{slugify(title)}".rstrip("-")
        base_id, suffix = category_id, 2
        while category_id in used_ids:
            category_id = f"{base_id}-{suffix}"
            suffix += 1
        used_ids.add(category_id)

        try:
            estimated = int(_first(raw, "estimatedCount", "estimated_count", "estimatedParticipants", default=0))
        except (TypeError, ValueError):
            estimated = 0

        categories.append(Category(
            category_id=category_id,
            title=title.strip(),
            description=description.strip(),
            estimated_count=max(estimated, 0),
        ))

    if not min_count <= len(categories) <= max_count:
        raise ValidationError(
            f"Generated {len(categories)} categories, expected between {min_count} and {max_count}"
        )
    return question, categories


def parse_assignments(text: str, source_ids: Sequence[str], categories: Sequence[Category]) -> List[Assignment]:
    """
    Parse a classification response into at most one assignment per source.

    Entries naming unknown sources or categories are dropped; categories may be
    referenced by id or by title.
    """
    data = extract_json(text)
    entries = _as_list(data, "assignments", "classifications", "results")
    wanted = set(source_ids)
    by_key = {c.category_id: c.category_id for c in categories}
    by_key.update({c.title.lower(): c.category_id for c in categories})

    assignments = {}
    dropped = 0
    for entry in entries:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        source_id = _first(entry, "sourceId", "source_id", "participantId", "participant_id", "respondentId")
        category_ref = _first(entry, "categoryId", "category_id", "themeId", "theme_id", "category")
        source_id = str(source_id) if source_id is not None else None
        category_id = by_key.get(str(category_ref)) or by_key.get(str(category_ref).lower())
        if source_id not in wanted or category_id is None or source_id in assignments:
            dropped += 1
            continue
        try:
            confidence = float(_first(entry, "confidence", default=0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        assignments[source_id] = Assignment(
            source_id=source_id,
            category_id=category_id,
            confidence=min(max(confidence, 0.0), 1.0),
            reasoning=str(_first(entry, "reasoning", "rationale", default="")),
        )

    if dropped:
        logger.debug(f"Dropped {dropped} unusable classification entries")
    return [assignments[sid] for sid in source_ids if sid in assignments]


def parse_excerpts(text: str) -> Dict[str, List[Excerpt]]:
    """Parse an evidence response into category_id -> excerpts."""
    data = extract_json(text)
    if not isinstance(data, dict):
        raise ValidationError("Expected an object mapping categories to excerpts")
    mapping = _first(data, "excerpts", "quotes", default=data)
    if not isinstance(mapping, dict):
        raise ValidationError("Expected an object mapping categories to excerpts")

    result = {}
    for category_id, items in mapping.items():
        if not isinstance(items, list):
            raise ValidationError(f"Excerpts for category '{category_id}' are not a list")
        excerpts = []
        for item in items:
            if isinstance(item, str):
                excerpts.append(Excerpt(text=item))
            elif isinstance(item, dict):
                excerpts.append(Excerpt(
                    text=str(_first(item, "text", "quote", "excerpt", default="")),
                    source_id=str(_first(item, "sourceId", "source_id", "participantId", "participant_id",
                                         default="")),
                ))
        result[str(category_id)] = excerpts
    return result


def parse_summary(text: str) -> Summary:
    """Parse a summary response; structural checks only."""
    data = extract_json(text)
    if not isinstance(data, dict):
        raise ValidationError("Expected a summary object")
    insights = _first(data, "insights", "keyInsights", "key_insights", default=[])
    if not isinstance(insights, list):
        raise ValidationError("Summary insights must be a list")
    try:
        return Summary(
            headline=_first(data, "headline", "title", default=""),
            summary=_first(data, "summary", default=""),
            insights=insights,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed summary: {e.error_count()} problems ({e.errors()[0]['msg']})") from e
