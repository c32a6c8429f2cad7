"""
Prompt rendering for each pipeline stage.

Every stage asks for a JSON object; parsing lives in parsing.py.
"""

import json
from typing import Tuple

from ..models import StageName
from .context import PromptContext

SYSTEM_PROMPT = (
    "You are a careful qualitative research analyst. You analyse open-ended survey "
    "responses and answer strictly in JSON with no commentary."
)

_INSTRUCTIONS = {
    StageName.GENERATE_CATEGORIES: """Identify between {min_categories} and {max_categories} distinct themes that explain the responses below.
First restate the question respondents were actually answering as "derivedQuestion".
Return:
{{"derivedQuestion": "...", "categories": [{{"id": "short-id", "title": "...", "description": "...", "estimatedCount": 0}}]}}""",

    StageName.CLASSIFY: """Assign every respondent to exactly one of the categories below.
Use the category ids exactly as given. Do not skip anyone.
Return:
{{"assignments": [{{"sourceId": "...", "categoryId": "...", "confidence": 0.0, "reasoning": "..."}}]}}""",

    StageName.EXTRACT_EVIDENCE: """For each category pick up to {max_excerpts} quotes from respondents assigned to it.
Quotes must be copied EXACTLY, word for word, from the respondent's answer. Do not paraphrase,
fix spelling, or merge respondents. Join two fragments of the same answer with " ... ".
Return:
{{"excerpts": {{"<categoryId>": [{{"sourceId": "...", "text": "..."}}]}}}}""",

    StageName.SUMMARIZE: """Write a short headline, a one-paragraph summary, and 3-5 key insights for these results.
Return:
{{"headline": "...", "summary": "...", "insights": ["..."]}}""",
}


def render_prompt(context: PromptContext) -> Tuple[str, str]:
    """Render a (system, user) prompt pair for the given stage context."""
    payload = dict(context.payload)
    instructions = _INSTRUCTIONS[context.stage].format(
        min_categories=payload.pop("min_categories", 3),
        max_categories=payload.pop("max_categories", 5),
        max_excerpts=payload.pop("max_excerpts", 3),
    )

    sections = [instructions, "DATA:", json.dumps(payload, ensure_ascii=False, indent=2)]

    if context.attempt and context.attempt.prior_errors:
        sections.append(
            f"ATTEMPT {context.attempt.attempt}. Your previous answer failed verification:\n"
            + "\n".join(f"- {error}" for error in context.attempt.prior_errors)
            + "\nFix these problems. Only use text that appears verbatim in the answers."
        )

    return SYSTEM_PROMPT, "\n\n".join(sections)
