from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    truncated: bool = False


@runtime_checkable
class LLMProvider(Protocol):
    async def complete(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        prompt: str,
    ) -> Completion:
        """Single-prompt, non-streaming completion.

        Failures are raised as ``ModelError`` with a structured reason so the
        caller can tell budget-related rejections from fatal ones.
        ``Completion.truncated`` is set when the model stopped on its output
        token limit.
        """
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from convo_compactor.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from convo_compactor.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
