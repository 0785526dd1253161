"""Registration of the built-in captioning providers."""
from __future__ import annotations

from venom.captioning.provider import ProviderRegistry
from venom.captioning.providers.anthropic import AnthropicProvider
from venom.captioning.providers.ollama import OllamaProvider
from venom.captioning.providers.openai import OpenAIProvider


def register_builtin_providers(registry: ProviderRegistry) -> ProviderRegistry:
    """Register the shipped providers; called once at startup."""
    registry.register("anthropic", AnthropicProvider, aliases=("claude",))
    registry.register("openai", OpenAIProvider, aliases=("gpt4", "gpt-4"))
    registry.register("ollama", OllamaProvider, aliases=("llava", "local"))
    return registry
