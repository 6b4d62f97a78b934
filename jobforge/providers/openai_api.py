"""OpenAI chat completions."""
from __future__ import annotations

from typing import Any

from jobforge.providers.base import LLMProvider, ProviderKind


class OpenAIProvider(LLMProvider):
    kind = ProviderKind.OPENAI
    base_url: str | None = None

    def _client(self, timeout: float):
        from openai import OpenAI

        return OpenAI(
            api_key=self._require_key(),
            base_url=self.base_url,
            timeout=timeout,
            max_retries=1,
        )

    def _complete(self, prompt: str) -> str:
        r = self._client(self.agent.timeout).chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.agent.temperature,
            max_tokens=self.agent.max_tokens,
        )
        if not r.choices:
            return ""
        return (r.choices[0].message.content or "").strip()

    def _probe(self) -> dict[str, Any]:
        models = [m.id for m in self._client(self.agent.test_timeout).models.list()]
        return {"model_available": self.model in models, "models_listed": len(models)}
