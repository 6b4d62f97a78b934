"""Anthropic messages API."""
from __future__ import annotations

from typing import Any

from jobforge.providers.base import LLMProvider, ProviderKind


class AnthropicProvider(LLMProvider):
    kind = ProviderKind.ANTHROPIC

    def _client(self, timeout: float):
        import anthropic

        return anthropic.Anthropic(api_key=self._require_key(), timeout=timeout, max_retries=1)

    def _complete(self, prompt: str) -> str:
        r = self._client(self.agent.timeout).messages.create(
            model=self.model,
            max_tokens=self.agent.max_tokens,
            temperature=self.agent.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = [block.text for block in r.content if getattr(block, "type", "") == "text"]
        return "".join(parts).strip()

    def _probe(self) -> dict[str, Any]:
        # No free listing endpoint on older keys: a one-token message proves auth.
        r = self._client(self.agent.test_timeout).messages.create(
            model=self.model,
            max_tokens=1,
            messages=[{"role": "user", "content": "test"}],
        )
        return {"stop_reason": getattr(r, "stop_reason", None)}
