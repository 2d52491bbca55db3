"""
Chat transport for prediction backends.

Every built-in backend exposes an OpenAI-compatible chat-completions
endpoint, so a single AsyncOpenAI-based transport serves all of them.
Transport errors are raised as TransportError carrying a FailureReason;
the adapter turns them into BackendFailure values.
"""

from __future__ import annotations

from typing import Protocol

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from oracle.core.logging import get_logger
from oracle.engine.backends.config import BackendConfig
from oracle.engine.schemas import FailureReason


logger = get_logger("engine.transport")

SYSTEM_PROMPT = (
    "You are a professional stock analyst. "
    "Always respond with valid JSON only, no markdown formatting."
)


class TransportError(Exception):
    """A backend call did not produce text."""

    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class Transport(Protocol):
    """Anything that turns a prompt into raw response text."""

    async def complete(self, prompt: str) -> str:
        ...


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code >= 500
    return isinstance(exc, APIConnectionError) and not isinstance(exc, APITimeoutError)


class ChatTransport:
    """OpenAI-compatible chat-completions transport for one backend."""

    def __init__(self, config: BackendConfig, client: AsyncOpenAI | None = None):
        self.config = config
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.api_key:
                raise TransportError(
                    FailureReason.DISABLED, f"No API key configured for {self.config.backend_id}"
                )
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=0,  # retries handled below
            )
        return self._client

    async def _create(self, prompt: str) -> str:
        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.config.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        if not response.choices:
            raise TransportError(FailureReason.HTTP, "No response choices")
        content = response.choices[0].message.content or ""
        if not content.strip():
            raise TransportError(FailureReason.PARSE, "Empty response content")
        return content

    async def complete(self, prompt: str) -> str:
        """Send one prompt, retrying rate limits and server errors."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_retries),
                wait=wait_exponential_jitter(initial=self.config.retry_delay, jitter=0.5),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    return await self._create(prompt)
        except APITimeoutError as e:
            raise TransportError(FailureReason.TIMEOUT, str(e)) from e
        except APIStatusError as e:
            raise TransportError(
                FailureReason.HTTP, f"HTTP {e.status_code}: {e.message}"
            ) from e
        except APIConnectionError as e:
            raise TransportError(FailureReason.TRANSPORT, str(e)) from e
        raise TransportError(FailureReason.TRANSPORT, "No attempt was made")
