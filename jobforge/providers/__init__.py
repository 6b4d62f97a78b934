from __future__ import annotations

from typing import TYPE_CHECKING

from .anthropic_api import AnthropicProvider
from .base import ConnectionTestResult, LLMProvider, ProviderKind
from .gemini_api import GeminiProvider
from .grok_api import GrokProvider
from .ollama import OllamaProvider
from .openai_api import OpenAIProvider

if TYPE_CHECKING:
    from jobforge.config import AgentConfig

__all__ = [
    "LLMProvider", "ProviderKind", "ConnectionTestResult",
    "OllamaProvider", "OpenAIProvider", "AnthropicProvider",
    "GeminiProvider", "GrokProvider", "PROVIDERS", "build_provider",
]

PROVIDERS: dict[ProviderKind, type[LLMProvider]] = {
    ProviderKind.OLLAMA: OllamaProvider,
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GEMINI: GeminiProvider,
    ProviderKind.GROK: GrokProvider,
}

_missing = set(ProviderKind) - set(PROVIDERS)
if _missing:
    raise RuntimeError(f"No provider implementation for: {sorted(k.value for k in _missing)}")


def build_provider(agent: "AgentConfig") -> LLMProvider:
    return PROVIDERS[agent.provider](agent)
