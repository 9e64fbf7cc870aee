import logging
import os
from collections.abc import AsyncIterator

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from chatloop.errors import TransportError, http_error_message

logger = logging.getLogger(__name__)

# Body fields the OpenAI client accepts as keyword arguments; everything
# else travels in ``extra_body``.
STANDARD_FIELDS = frozenset({
    "model",
    "messages",
    "stream",
    "tools",
    "tool_choice",
    "temperature",
    "max_tokens",
    "top_p",
    "presence_penalty",
    "frequency_penalty",
    "stop",
    "seed",
})


class ModelProvider:
    """Transport to a chat completion endpoint.

    ``stream`` yields the raw response body as text chunks, exactly as
    received; parsing is left to :mod:`chatloop.streaming`.  ``complete``
    returns the decoded JSON envelope of a non-streamed request.
    """

    system = "openai"

    def stream(self, body: dict) -> AsyncIterator[str]:
        raise NotImplementedError

    async def complete(self, body: dict) -> dict:
        raise NotImplementedError


class OpenAICompatibleProvider(ModelProvider):
    """Provider for any server speaking the OpenAI chat completions API.

    Args:
        base_url: API root, including the ``/v1`` suffix.
        api_key: Bearer token; local servers accept any value.
        timeout: Request timeout in seconds.
        max_retries: Retries the OpenAI client performs on connection
            errors and retryable status codes.
        http_client: Custom ``httpx.AsyncClient``, e.g. with a mock transport.
        allow_extra_params: Forward non-standard sampling parameters
            (``top_k``, ``min_p``, ``samplers``…) in ``extra_body``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 600.0,
        max_retries: int = 5,
        http_client: httpx.AsyncClient | None = None,
        allow_extra_params: bool = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.allow_extra_params = allow_extra_params
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            max_retries=max_retries,
            timeout=timeout,
            http_client=http_client,
        )

    def _request_kwargs(self, body: dict) -> dict:
        kwargs = {k: v for k, v in body.items() if k in STANDARD_FIELDS}
        extra = {k: v for k, v in body.items() if k not in STANDARD_FIELDS}
        if extra and self.allow_extra_params:
            kwargs["extra_body"] = extra
        elif extra:
            logger.debug(f"Dropping unsupported parameters: {sorted(extra)}")
        return kwargs

    async def stream(self, body: dict) -> AsyncIterator[str]:
        kwargs = self._request_kwargs({**body, "stream": True})
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **kwargs
            ) as response:
                async for chunk in response.iter_text():
                    yield chunk
        except APIStatusError as e:
            raise TransportError(
                http_error_message(e.status_code), status_code=e.status_code,
            ) from e
        except APITimeoutError as e:
            raise TransportError("Request timeout - server may be overloaded") from e
        except APIConnectionError as e:
            raise TransportError(
                "Unable to connect to server - please check if the server is running"
            ) from e

    async def complete(self, body: dict) -> dict:
        kwargs = self._request_kwargs({**body, "stream": False})
        try:
            response = await self.client.chat.completions.create(**kwargs)
        except APIStatusError as e:
            raise TransportError(
                http_error_message(e.status_code), status_code=e.status_code,
            ) from e
        except APITimeoutError as e:
            raise TransportError("Request timeout - server may be overloaded") from e
        except APIConnectionError as e:
            raise TransportError(
                "Unable to connect to server - please check if the server is running"
            ) from e
        return response.model_dump()


class LlamaCppProvider(OpenAICompatibleProvider):
    """Local llama.cpp ``llama-server``."""

    system = "llama.cpp"

    def __init__(self, base_url: str | None = None, **kwargs):
        if not base_url:
            base_url = os.getenv("LLAMA_CPP_BASE_URL", "http://localhost:8080/v1")
        super().__init__(base_url=base_url, **kwargs)


class OpenAIProvider(OpenAICompatibleProvider):

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        kwargs.setdefault("allow_extra_params", False)
        super().__init__(
            base_url="https://api.openai.com/v1", api_key=api_key, **kwargs,
        )


class OpenRouter(OpenAICompatibleProvider):

    system = "openrouter"

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        kwargs.setdefault("timeout", 180.0)
        super().__init__(
            base_url="https://openrouter.ai/api/v1", api_key=api_key, **kwargs,
        )
