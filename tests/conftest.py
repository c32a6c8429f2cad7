"""Shared fixtures: deterministic generator stubs and sample tasks."""

import asyncio
import json
import re

import pytest

from thematic_system.config import Settings
from thematic_system.models import SourceRecord, StageName, Task

CATEGORY_KEYWORDS = {
    "price": ("price", "cost", "cheap", "expensive"),
    "speed": ("fast", "speed", "slow", "servers"),
    "privacy": ("log", "privacy", "private", "track"),
}

DEFAULT_CATEGORIES = [
    {"id": "price", "title": "Price and value", "description": "Respondents focused on cost and value for money", "estimatedCount": 2},
    {"id": "speed", "title": "Connection speed", "description": "Respondents focused on fast and reliable servers", "estimatedCount": 2},
    {"id": "privacy", "title": "Privacy guarantees", "description": "Respondents focused on no-logs and tracking policies", "estimatedCount": 2},
]

SAMPLE_ANSWERS = [
    ("r1", "The price matters most to me. I want something cheap."),
    ("r2", "I like no logs and fast servers. Privacy is key."),
    ("r3", "Fast servers for streaming are essential."),
    ("r4", "A strict no logs policy so nobody can track me."),
    ("r5", "Cost is the deciding factor for our family."),
    ("r6", "Speed. Streaming without buffering needs fast servers."),
]


def interleave(answer: str, question: str = "What matters most when choosing a VPN?") -> str:
    return f"prompt: {question} answer: {answer}"


def keyword_category(text: str) -> str:
    lowered = text.lower()
    for category_id, words in CATEGORY_KEYWORDS.items():
        if any(word in lowered for word in words):
            return category_id
    return "price"


def default_categories(context):
    return json.dumps({"derivedQuestion": "What matters most when choosing a VPN?", "categories": DEFAULT_CATEGORIES})


def default_classify(context):
    return json.dumps({"assignments": [
        {
            "sourceId": response["sourceId"],
            "categoryId": keyword_category(response["text"]),
            "confidence": 0.9,
            "reasoning": "keyword match",
        }
        for response in context.payload["responses"]
    ]})


def default_evidence(context):
    excerpts = {}
    for category in context.payload["categories"]:
        items = []
        for response in category["responses"][:2]:
            first_sentence = re.split(r"(?<=[.!?])\s+", response["text"])[0]
            items.append({"sourceId": response["sourceId"], "text": first_sentence})
        excerpts[category["id"]] = items
    return "```json\n" + json.dumps({"excerpts": excerpts}) + "\n```"


def default_summary(context):
    return json.dumps({
        "headline": "Price, speed and privacy drive VPN choice",
        "summary": "Respondents split between cost, connection speed and no-logs guarantees.",
        "insights": ["Price is the most common driver", "Fast servers matter for streaming"],
    })


class StubGenerator:
    """
    Deterministic generator keyed by stage.

    A handler returns the raw response text, or raises to simulate a
    generator failure. Every PromptContext received is recorded.
    """

    def __init__(self, **handlers):
        self.handlers = {
            StageName.GENERATE_CATEGORIES: default_categories,
            StageName.CLASSIFY: default_classify,
            StageName.EXTRACT_EVIDENCE: default_evidence,
            StageName.SUMMARIZE: default_summary,
        }
        for name, handler in handlers.items():
            self.handlers[StageName(name)] = handler
        self.calls = []

    def calls_for(self, stage):
        return [c for c in self.calls if c.stage == StageName(stage)]

    async def generate(self, context):
        self.calls.append(context)
        await asyncio.sleep(0)
        result = self.handlers[context.stage](context)
        if asyncio.iscoroutine(result):
            result = await result
        return result


def make_task(task_id="q1", answers=SAMPLE_ANSWERS, context_text="VPN survey"):
    return Task(
        task_id=task_id,
        items=[SourceRecord(source_id=sid, raw_text=interleave(text)) for sid, text in answers],
        context_text=context_text,
    )


@pytest.fixture
def fast_settings():
    """Settings with zero backoff so retries run instantly"""
    return Settings(
        LLM_PROVIDER="disabled",
        RETRY_BASE_DELAY_SECONDS=0,
        RETRY_JITTER_SECONDS=0,
        TASK_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def stub_generator():
    """Factory for StubGenerator instances with optional per-stage handlers"""
    return StubGenerator


@pytest.fixture
def task_factory():
    """Factory building Task objects from (source_id, answer) pairs"""
    return make_task
