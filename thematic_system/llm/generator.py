"""
Text generator interface and the LLM-backed implementation.

The pipeline only depends on the Generator protocol; LLMGenerator is built
once per run by the driver and passed in explicitly.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

import anthropic
import httpx
import openai

from ..config import Settings
from ..exceptions import FatalExternalError
from .context import PromptContext
from .errors import to_external_error
from .prompts import render_prompt

logger = logging.getLogger(__name__)


@runtime_checkable
class Generator(Protocol):
    """Prompt context in, raw text out. Must be safe to call concurrently."""

    async def generate(self, context: PromptContext) -> str:
        ...


class LLMGenerator:
    """Generator backed by the OpenAI or Anthropic async SDK."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.provider = settings.LLM_PROVIDER
        self._http_client: Optional[httpx.AsyncClient] = None
        self._client = None

    def _ensure_client(self):
        if self._client is not None:
            return self._client
        if self.provider == "disabled":
            raise FatalExternalError("LLM provider is disabled; set LLM_PROVIDER", kind="auth")

        self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.LLM_TIMEOUT_SECONDS))
        if self.provider == "openai":
            self._client = openai.AsyncOpenAI(
                api_key=self.settings.OPENAI_API_KEY,
                base_url=self.settings.OPENAI_API_BASE,
                http_client=self._http_client,
                max_retries=0,
            )
        elif self.provider == "anthropic":
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.ANTHROPIC_API_KEY,
                http_client=self._http_client,
                max_retries=0,
            )
        return self._client

    async def generate(self, context: PromptContext) -> str:
        client = self._ensure_client()
        system_prompt, user_prompt = render_prompt(context)
        try:
            if self.provider == "openai":
                response = await client.chat.completions.create(
                    model=self.settings.OPENAI_MODEL,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=self.settings.LLM_TEMPERATURE,
                    max_tokens=self.settings.LLM_MAX_TOKENS,
                )
                text = response.choices[0].message.content or ""
                if response.choices[0].finish_reason == "length":
                    logger.warning(f"OpenAI response truncated at max tokens for {context.task_id}/{context.stage.value}")
                return text

            response = await client.messages.create(
                model=self.settings.ANTHROPIC_MODEL,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=self.settings.LLM_TEMPERATURE,
                max_tokens=self.settings.LLM_MAX_TOKENS,
            )
            if response.stop_reason == "max_tokens":
                logger.warning(f"Anthropic response truncated at max tokens for {context.task_id}/{context.stage.value}")
            return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        except Exception as e:
            logger.error(f"{self.provider} generation failed for {context.task_id}/{context.stage.value}: {e}")
            raise to_external_error(e, provider=self.provider) from e

    async def aclose(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._client = None
