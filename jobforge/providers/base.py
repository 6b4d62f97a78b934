"""Common interface of the model providers an agent can be bound to."""
from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from jobforge.errors import ProviderError
from jobforge.log import get_logger

if TYPE_CHECKING:
    from jobforge.config import AgentConfig

log = get_logger(__name__)


class ProviderKind(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    GROK = "grok"


# USD per 1K tokens as (input, output). Rough published list prices.
RATE_TABLE: dict[str, tuple[float, float]] = {
    "gpt-4": (0.03, 0.06),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4o": (0.005, 0.015),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-3.5-turbo": (0.001, 0.002),
    "claude-3-opus-20240229": (0.015, 0.075),
    "claude-3-sonnet-20240229": (0.003, 0.015),
    "claude-3-haiku-20240307": (0.0005, 0.0025),
    "gemini-pro": (0.001, 0.002),
    "gemini-1.5-flash": (0.000075, 0.0003),
    "grok-beta": (0.002, 0.004),
}
DEFAULT_RATE: tuple[float, float] = (0.001, 0.002)
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


@dataclass
class ConnectionTestResult:
    success: bool
    provider: str
    model: str
    latency_ms: float = 0.0
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class LLMProvider(ABC):
    """Text in, text out. One subclass per ProviderKind."""

    kind: ProviderKind

    def __init__(self, agent: "AgentConfig") -> None:
        self.agent = agent
        self.model = agent.model

    @abstractmethod
    def _complete(self, prompt: str) -> str:
        """Send ``prompt`` and return the completion text; may raise anything."""

    @abstractmethod
    def _probe(self) -> dict[str, Any]:
        """Cheap authenticated call proving the provider is reachable."""

    def generate(self, prompt: str) -> str:
        """Return the completion for ``prompt`` or raise ProviderError."""
        try:
            return self._complete(prompt) or ""
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(self.kind.value, f"{type(exc).__name__}: {exc}") from exc

    def test_connection(self) -> ConnectionTestResult:
        started = time.perf_counter()
        try:
            details = self._probe()
        except Exception as exc:
            log.warning("%s connection test failed: %s", self.kind.value, exc)
            return ConnectionTestResult(
                success=False,
                provider=self.kind.value,
                model=self.model,
                latency_ms=(time.perf_counter() - started) * 1000,
                error=str(exc)[:300],
            )
        return ConnectionTestResult(
            success=True,
            provider=self.kind.value,
            model=self.model,
            latency_ms=(time.perf_counter() - started) * 1000,
            details=details,
        )

    def estimate_cost(self, prompt: str, response: str) -> float:
        input_rate, output_rate = RATE_TABLE.get(self.model, DEFAULT_RATE)
        return (
            estimate_tokens(prompt) / 1000 * input_rate
            + estimate_tokens(response) / 1000 * output_rate
        )

    def _require_key(self) -> str:
        if not self.agent.api_key:
            raise ProviderError(self.kind.value, "API key not configured")
        return self.agent.api_key
