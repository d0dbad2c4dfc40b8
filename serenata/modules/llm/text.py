"""
Text generation client: one-shot completions via Claude.
Used for song lyrics and for music style prompts.
"""

import logging

from anthropic import APIError, AsyncAnthropic

from serenata.config import Settings
from serenata.errors import GenerationError

logger = logging.getLogger(__name__)


class TextGenerator:
    def __init__(self, settings: Settings, client: AsyncAnthropic | None = None):
        self.settings = settings
        self.client = client or AsyncAnthropic(
            api_key=settings.anthropic_api_key,
            timeout=settings.http_timeout_seconds,
            max_retries=0,
        )

    async def complete(self, system_role: str, prompt: str, max_tokens: int | None = None) -> str:
        """Return the generated text, or "" when the model produced nothing."""
        try:
            response = await self.client.messages.create(
                model=self.settings.anthropic_model,
                max_tokens=max_tokens or self.settings.anthropic_max_tokens,
                system=system_role,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIError as e:
            raise GenerationError(f"Claude request failed: {e}") from e

        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        return "".join(parts).strip()
