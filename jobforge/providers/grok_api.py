"""xAI Grok through its OpenAI-compatible API."""
from __future__ import annotations

from jobforge.providers.base import ProviderKind
from jobforge.providers.openai_api import OpenAIProvider


class GrokProvider(OpenAIProvider):
    kind = ProviderKind.GROK
    base_url = "https://api.x.ai/v1"
