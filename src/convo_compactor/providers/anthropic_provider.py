import anthropic
from loguru import logger
from tenacity import retry

from convo_compactor.errors import ModelError, ModelErrorReason
from convo_compactor.provider import Completion
from convo_compactor.providers.common import default_retry_kwargs, is_context_overflow


def _classify(ex: anthropic.APIError) -> ModelError:
    if isinstance(ex, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return ModelError(ModelErrorReason.AUTH, f"Anthropic rejected the API key: {ex}")
    if isinstance(ex, anthropic.RateLimitError):
        return ModelError(ModelErrorReason.RATE_LIMIT, f"Anthropic rate limit exceeded: {ex}")
    if isinstance(ex, anthropic.APIConnectionError):
        return ModelError(ModelErrorReason.NETWORK, f"Could not reach Anthropic: {ex}")
    if isinstance(ex, anthropic.APIStatusError):
        if is_context_overflow(ex.status_code, None, str(ex)):
            return ModelError(ModelErrorReason.PROMPT_TOO_LARGE, f"Prompt too large for model: {ex}")
        return ModelError(ModelErrorReason.PROVIDER, f"Anthropic API error ({ex.status_code}): {ex}")
    return ModelError(ModelErrorReason.PROVIDER, f"Anthropic API error: {ex}")


class AnthropicProvider:
    def __init__(self, api_key: str, *, client: anthropic.AsyncAnthropic | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def complete(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        prompt: str,
    ) -> Completion:
        try:
            response = await self._create(model, max_tokens, temperature, prompt)
        except anthropic.APIError as ex:
            raise _classify(ex) from ex

        usage = response.usage
        logger.debug(
            f"Completion API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        text = "".join(block.text for block in response.content if block.type == "text")
        return Completion(
            text=text,
            model=getattr(response, "model", None) or model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            truncated=response.stop_reason == "max_tokens",
        )

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def _create(self, model: str, max_tokens: int, temperature: float, prompt: str):
        logger.debug(f"Completion API request: model={model}, max_tokens={max_tokens}, prompt_chars={len(prompt):,}")
        return await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
