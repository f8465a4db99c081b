"""Language-model backends behind one streaming contract."""

from __future__ import annotations

from typing import Optional

from familiar.api.base import (
    Fragment,
    ProviderAdapter,
    StreamEnd,
    TextDelta,
    ToolCallRequest,
)
from familiar.config import AgentConfig, ProviderTuning

__all__ = [
    "Fragment",
    "ProviderAdapter",
    "StreamEnd",
    "TextDelta",
    "ToolCallRequest",
    "create_provider",
]


def create_provider(config: AgentConfig, tuning: Optional[ProviderTuning] = None) -> ProviderAdapter:
    """Build the adapter for ``config.platform``."""
    model = config.effective_model()
    if config.platform == "anthropic":
        from familiar.api.claude import ClaudeProvider

        return ClaudeProvider(config.api_key, model, tuning=tuning)
    if config.platform == "gemini":
        from familiar.api.gemini import GeminiProvider

        return GeminiProvider(config.api_key, model, tuning=tuning)

    from familiar.api.openai_compat import (
        KIMI_BASE_URL,
        OPENAI_BASE_URL,
        OpenAICompatProvider,
    )

    if config.platform == "kimi":
        return OpenAICompatProvider(
            config.api_key, model, base_url=KIMI_BASE_URL, tuning=tuning, name="kimi"
        )
    return OpenAICompatProvider(
        config.api_key, model, base_url=OPENAI_BASE_URL, tuning=tuning, name="openai"
    )
