import openai
from loguru import logger
from tenacity import retry

from convo_compactor.errors import ModelError, ModelErrorReason
from convo_compactor.provider import Completion
from convo_compactor.providers.common import default_retry_kwargs, is_context_overflow


def _classify(ex: openai.OpenAIError) -> ModelError:
    if isinstance(ex, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ModelError(ModelErrorReason.AUTH, f"OpenAI rejected the API key: {ex}")
    if isinstance(ex, openai.RateLimitError):
        return ModelError(ModelErrorReason.RATE_LIMIT, f"OpenAI rate limit exceeded: {ex}")
    if isinstance(ex, openai.APIConnectionError):
        return ModelError(ModelErrorReason.NETWORK, f"Could not reach OpenAI: {ex}")
    if isinstance(ex, openai.APIStatusError):
        code = getattr(ex, "code", None)
        if is_context_overflow(ex.status_code, code, str(ex)):
            return ModelError(ModelErrorReason.PROMPT_TOO_LARGE, f"Prompt too large for model: {ex}")
        return ModelError(ModelErrorReason.PROVIDER, f"OpenAI API error ({ex.status_code}): {ex}")
    return ModelError(ModelErrorReason.PROVIDER, f"OpenAI API error: {ex}")


class OpenAIProvider:
    def __init__(self, api_key: str, *, client: openai.AsyncOpenAI | None = None):
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    async def complete(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        prompt: str,
    ) -> Completion:
        try:
            response = await self._create(model, max_tokens, temperature, prompt)
        except openai.OpenAIError as ex:
            raise _classify(ex) from ex

        choice = response.choices[0]
        text = choice.message.content or ""
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0
        logger.debug(
            f"Completion API response: finish_reason={choice.finish_reason}, "
            f"len={len(text)}, output_tokens={output_tokens}"
        )
        return Completion(
            text=text,
            model=getattr(response, "model", None) or model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            truncated=choice.finish_reason == "length",
        )

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def _create(self, model: str, max_tokens: int, temperature: float, prompt: str):
        logger.debug(f"Completion API request: model={model}, max_tokens={max_tokens}, prompt_chars={len(prompt):,}")
        return await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
