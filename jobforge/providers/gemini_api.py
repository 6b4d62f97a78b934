"""Google Gemini through google-generativeai."""
from __future__ import annotations

from typing import Any

from jobforge.providers.base import LLMProvider, ProviderKind


class GeminiProvider(LLMProvider):
    kind = ProviderKind.GEMINI

    def _genai(self):
        import google.generativeai as genai

        genai.configure(api_key=self._require_key())
        return genai

    def _complete(self, prompt: str) -> str:
        genai = self._genai()
        model = genai.GenerativeModel(self.model)
        r = model.generate_content(
            prompt,
            generation_config={
                "temperature": self.agent.temperature,
                "max_output_tokens": self.agent.max_tokens,
            },
            request_options={"timeout": self.agent.timeout},
        )
        return (getattr(r, "text", "") or "").strip()

    def _probe(self) -> dict[str, Any]:
        genai = self._genai()
        names = [m.name for m in genai.list_models(request_options={"timeout": self.agent.test_timeout})]
        return {"model_available": any(n.endswith(self.model) for n in names)}
