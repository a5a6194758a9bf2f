"""Remote text-completion clients used by every translator in the package.

Callers only see ``complete(messages, ...) -> str``: a call either returns the
completion text or raises once the retry budget is spent.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from aiolimiter import AsyncLimiter
from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    OpenAIError
)

logger = logging.getLogger(__name__)

# HTTP statuses worth another attempt; everything else non-2xx fails fast.
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

ChatMessage = Dict[str, str]


class CompletionError(Exception):
    """Raised when the completion service fails for good."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableCompletionError(CompletionError):
    """A transient failure (retryable status or transport error)."""


class TranslationCancelledError(Exception):
    """Raised at a remote-call boundary once cancellation was requested."""


class CancellationToken:
    """
    Cooperative cancellation shared by the job scheduler and the remote client.

    Cancellation is either requested explicitly with ``cancel()`` (which also
    aborts requests in flight) or polled from an optional predicate.
    """

    def __init__(self, check: Optional[Callable[[], bool]] = None):
        self._event = asyncio.Event()
        self._check = check

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return bool(self._check and self._check())

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise TranslationCancelledError("Translation was cancelled")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamCallbacks:
    """
    Progress hooks threaded through a field translation.

    ``on_stream`` receives each raw completion as it arrives and ``on_complete``
    fires after each completion; both are notifications only.
    """
    on_stream: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[], None]] = None
    cancellation: Optional[CancellationToken] = None

    def notify(self, text: str) -> None:
        if self.on_stream is not None:
            self.on_stream(text)
        if self.on_complete is not None:
            self.on_complete()


def extract_completion_text(data: Any) -> str:
    """
    Pull the completion text out of a proxy response body.

    Chat-style bodies (``choices[0].message.content`` / ``choices[0].text``) win
    over responses-style bodies (``output_text`` / ``output[0].content[0].text``).
    Returns an empty string when nothing matches.
    """
    if not isinstance(data, dict):
        return ''

    choices = data.get('choices')
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first_choice = choices[0]
        message = first_choice.get('message')
        if isinstance(message, dict) and message.get('content'):
            return message['content']
        if first_choice.get('text'):
            return first_choice['text']

    if data.get('output_text'):
        return data['output_text']

    output = data.get('output')
    if isinstance(output, list) and output and isinstance(output[0], dict):
        content = output[0].get('content')
        if isinstance(content, list) and content and isinstance(content[0], dict):
            if content[0].get('text'):
                return content[0]['text']
    return ''


async def _handle_retry(attempt: int, max_retries: int, base_delay: float, api_exc: Exception) -> bool:
    """
    Sleep before the next attempt using linear backoff.

    Args:
        attempt (int): The attempt that just failed (1-based).
        max_retries (int): The maximum number of attempts.
        base_delay (float): The base delay in seconds.
        api_exc (Exception): The transient error that triggered the retry.

    Returns:
        bool: True if the caller should try again, False once attempts are exhausted.
    """
    if attempt < max_retries:
        delay = base_delay * attempt
        logger.info(
            f"Retrying completion request in {delay:.2f} seconds after {api_exc.__class__.__name__} "
            f"(Attempt {attempt}/{max_retries})"
        )
        await asyncio.sleep(delay)
        return True
    logger.error(f"Completion request failed after {max_retries} attempts: {api_exc}")
    return False


class CompletionClient(ABC):
    """Retrying, rate-limited completion client."""

    def __init__(
            self,
            model_name: str,
            temperature: float = 0.2,
            max_tokens: Optional[int] = None,
            max_retries: int = 3,
            retry_base_delay: float = 1.0,
            requests_per_minute: int = 60,
            max_concurrent_requests: int = 3,
            request_timeout: float = 60.0
    ):
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.request_timeout = request_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._rate_limiter = AsyncLimiter(max_rate=requests_per_minute, time_period=60)

    @abstractmethod
    async def _request(self, messages: List[ChatMessage], model: str, max_tokens: Optional[int]) -> str:
        """Issue a single request; raise RetryableCompletionError for transient failures."""

    async def aclose(self) -> None:
        """Release transport resources."""

    async def complete(
            self,
            messages: List[ChatMessage],
            model: Optional[str] = None,
            max_tokens: Optional[int] = None,
            cancellation: Optional[CancellationToken] = None
    ) -> str:
        """
        Run one completion and return its text.

        Args:
            messages: Chat messages (``{"role": ..., "content": ...}``).
            model: Model override; defaults to the configured model.
            max_tokens: Completion token cap; defaults to the configured cap.
            cancellation: Checked before every attempt; cancelling aborts the request in flight.

        Returns:
            The completion text (possibly empty).

        Raises:
            CompletionError: On a non-retryable failure or after ``max_retries`` attempts.
            TranslationCancelledError: When cancellation was requested.
        """
        model = model or self.model_name
        if max_tokens is None:
            max_tokens = self.max_tokens

        for attempt in range(1, self.max_retries + 1):
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            try:
                async with self._semaphore, self._rate_limiter:
                    return await self._run_cancellable(
                        self._request(messages, model, max_tokens), cancellation
                    )
            except RetryableCompletionError as api_exc:
                logger.warning(f"Transient completion error: {api_exc}")
                if not await _handle_retry(attempt, self.max_retries, self.retry_base_delay, api_exc):
                    raise CompletionError(
                        f"Completion failed after {self.max_retries} attempts: {api_exc}",
                        status_code=api_exc.status_code
                    ) from api_exc

        raise CompletionError("Completion loop exited without a result")

    @staticmethod
    async def _run_cancellable(request: Awaitable[str], cancellation: Optional[CancellationToken]) -> str:
        if cancellation is None:
            return await request
        request_task = asyncio.ensure_future(request)
        abort_task = asyncio.ensure_future(cancellation.wait())
        try:
            done, _ = await asyncio.wait({request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            request_task.cancel()
            abort_task.cancel()
            raise
        if request_task in done:
            abort_task.cancel()
            return request_task.result()
        request_task.cancel()
        raise TranslationCancelledError("Translation was cancelled while a request was in flight")


class ProxyCompletionClient(CompletionClient):
    """Posts chat payloads to an HTTP proxy that fronts the model provider."""

    def __init__(
            self,
            proxy_url: str,
            model_name: str,
            http_client: Optional[httpx.AsyncClient] = None,
            extra: Optional[Dict[str, Any]] = None,
            **kwargs
    ):
        super().__init__(model_name, **kwargs)
        self.proxy_url = proxy_url
        self.extra = dict(extra or {})
        self._http_client = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, messages: List[ChatMessage], model: str, max_tokens: Optional[int]) -> str:
        payload: Dict[str, Any] = {
            'model': model,
            'messages': messages,
            'temperature': self.temperature,
        }
        if max_tokens is not None:
            payload['max_completion_tokens'] = max_tokens
        payload.update(self.extra)

        try:
            response = await self._client().post(self.proxy_url, json=payload)
        except httpx.TransportError as exc:
            raise RetryableCompletionError(f"Transport error: {exc.__class__.__name__} - {exc}") from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise RetryableCompletionError(
                f"Proxy error {response.status_code}: {response.text}",
                status_code=response.status_code
            )
        if not response.is_success:
            raise CompletionError(
                f"Proxy error {response.status_code}: {response.text}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionError(f"Proxy returned a non-JSON body: {exc}") from exc
        return extract_completion_text(data)


class OpenAICompletionClient(CompletionClient):
    """Talks to the OpenAI chat completions API directly."""

    def __init__(self, client: AsyncOpenAI, model_name: str, **kwargs):
        super().__init__(model_name, **kwargs)
        self._openai = client

    async def aclose(self) -> None:
        await self._openai.close()

    async def _request(self, messages: List[ChatMessage], model: str, max_tokens: Optional[int]) -> str:
        request_kwargs: Dict[str, Any] = {
            'model': model,
            'messages': messages,
            'temperature': self.temperature,
            'timeout': self.request_timeout,
        }
        if max_tokens is not None:
            request_kwargs['max_completion_tokens'] = max_tokens

        try:
            response = await self._openai.chat.completions.create(**request_kwargs)
        except APIConnectionError as api_exc:
            # Also covers APITimeoutError.
            raise RetryableCompletionError(f"{api_exc.__class__.__name__} - {api_exc}") from api_exc
        except APIStatusError as api_exc:
            if api_exc.status_code in RETRYABLE_STATUS_CODES:
                raise RetryableCompletionError(
                    f"{api_exc.__class__.__name__} - {api_exc}", status_code=api_exc.status_code
                ) from api_exc
            raise CompletionError(
                f"{api_exc.__class__.__name__} - {api_exc}", status_code=api_exc.status_code
            ) from api_exc
        except OpenAIError as api_exc:
            raise CompletionError(f"{api_exc.__class__.__name__} - {api_exc}") from api_exc

        if not response.choices:
            return ''
        return response.choices[0].message.content or ''
