"""Locally hosted Ollama endpoint. Free to call; exposes model discovery."""
from __future__ import annotations

from typing import Any

import requests

from jobforge.errors import ProviderError
from jobforge.log import get_logger
from jobforge.providers.base import LLMProvider, ProviderKind
from jobforge.retry import retry

log = get_logger(__name__)


class OllamaProvider(LLMProvider):
    kind = ProviderKind.OLLAMA

    @property
    def endpoint(self) -> str:
        return self.agent.endpoint.rstrip("/")

    @retry(max_attempts=2, base_delay=2.0)
    def _complete(self, prompt: str) -> str:
        r = requests.post(
            f"{self.endpoint}/api/generate",
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": self.agent.temperature,
                    "num_predict": self.agent.max_tokens,
                },
            },
            timeout=self.agent.timeout,
        )
        r.raise_for_status()
        return str(r.json().get("response", ""))

    def list_models(self) -> list[dict[str, Any]]:
        """Models currently pulled on the endpoint (name, size, modified_at, digest)."""
        try:
            r = requests.get(f"{self.endpoint}/api/tags", timeout=self.agent.list_timeout)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise ProviderError(self.kind.value, f"Ollama not available at {self.endpoint}: {exc}") from exc
        return [
            {
                "name": m.get("name", ""),
                "size": m.get("size", 0),
                "modified_at": m.get("modified_at", ""),
                "digest": m.get("digest", ""),
            }
            for m in r.json().get("models", [])
        ]

    def _probe(self) -> dict[str, Any]:
        r = requests.get(f"{self.endpoint}/api/tags", timeout=self.agent.test_timeout)
        r.raise_for_status()
        names = [m.get("name", "") for m in r.json().get("models", [])]
        return {"endpoint": self.endpoint, "model_available": self.model in names}

    def estimate_cost(self, prompt: str, response: str) -> float:
        return 0.0
