"""Conversational retry loop.

This module owns the attempt state machine every entry point runs through:

  Attempting(0) ──ok──────────────────────────────→ Succeeded
       │
       ├─ RetryableError → AttemptError(n) ─ n < max_retries → Attempting(n+1)
       │                                   └ otherwise       → Exhausted
       │
       └─ any other Exception ────────────────────────────→ Fatal (no retry)

Per attempt:
  1. ROUTE: attempt 0 uses the main backend; later attempts use the fallback
     backend when one is configured.
  2. BACKOFF: before attempt n > 0 wait base * 2^(n-1) seconds plus up to
     20% jitter.
  3. BUILD: attempt 0 sends the caller's messages; attempt n replays the
     previous failed conversation plus its error message as a user turn.
  4. INVOKE: call the backend with pass-through params.
  5. EXTRACT: completion (raw), text, or image bytes. Missing text or
     image is a RetryableError.
  6. VALIDATE: optional ``validate(data, info)`` hook, sync or async.

Only ``RetryableError`` is retried. Everything else (network faults, auth
errors, bugs in hooks) is wrapped in ``FatalLLMError`` with the conversation
it happened in and raised immediately. ``asyncio.CancelledError`` is not an
``Exception`` and passes through untouched.
"""

import asyncio
import base64
import inspect
import json
import random
import re
import time
from typing import Any, Callable, Literal, Optional, Sequence, Union

import httpx

from resilient_llm.llm.errors import (
    AttemptError,
    FatalLLMError,
    RetryableError,
    RetryExhaustedError,
)
from resilient_llm.llm.messages import (
    build_attempt_messages,
    failed_conversation,
    normalize_messages,
)
from resilient_llm.llm.protocols import (
    BackendInvoker,
    completion_to_dict,
    first_message,
    message_text,
)
from resilient_llm.schemas.conversation import (
    Attempt,
    InvocationResult,
    Message,
    Mode,
    RetryResponseInfo,
    copy_conversation,
)
from resilient_llm.schemas.options import RetryOptions
from resilient_llm.utils.logging import call_scope, log, get_logger

MODULE = "llm.retry"
logger = get_logger()

ResponseType = Literal["raw", "text", "image"]

DEFAULT_BACKOFF_BASE = 1.0
BACKOFF_JITTER = 0.2

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


# =============================================================================
# FALLBACK ROUTER
# =============================================================================

def route_attempt(
    attempt_number: int,
    main: BackendInvoker,
    fallback: Optional[BackendInvoker] = None,
) -> tuple[BackendInvoker, Mode]:
    """Pick the backend and mode tag for an attempt."""
    if fallback is not None and attempt_number > 0:
        return fallback, "fallback"
    return main, "main"


def backoff_delay(
    attempt_number: int,
    base: float = DEFAULT_BACKOFF_BASE,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before ``attempt_number``. Zero for the first attempt."""
    if attempt_number <= 0 or base <= 0:
        return 0.0
    delay = base * (2 ** (attempt_number - 1))
    return delay + delay * rand() * BACKOFF_JITTER


# =============================================================================
# RESPONSE EXTRACTION
# =============================================================================

def extract_text(completion: dict, message: Optional[Message]) -> str:
    """Text of the first choice.

    Raises:
        RetryableError: The backend produced no text.
    """
    text = message_text(message)
    if text is None:
        raise RetryableError(
            "LLM returned no text content.",
            "CUSTOM_ERROR",
            raw_response=json.dumps(completion, default=str),
        )
    return text


async def extract_image(
    completion: dict,
    message: Optional[Message],
    http_client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """Bytes of the first generated image.

    http(s) URLs are downloaded; data URLs are base64-decoded.

    Raises:
        RetryableError: No image, or an image entry without a usable URL.
    """
    images = (message or {}).get("images")
    if not images or not isinstance(images, list):
        raise RetryableError(
            "LLM returned no image.",
            "CUSTOM_ERROR",
            raw_response=json.dumps(completion, default=str),
        )

    image_url = images[0].get("image_url") if isinstance(images[0], dict) else None
    url = image_url.get("url") if isinstance(image_url, dict) else None
    if not isinstance(url, str):
        raise RetryableError(
            "LLM returned invalid image URL.",
            "CUSTOM_ERROR",
            raw_response=json.dumps(completion, default=str),
        )

    if url.startswith("http"):
        if http_client is not None:
            resp = await http_client.get(url)
        else:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                resp = await client.get(url)
        resp.raise_for_status()
        return resp.content

    return base64.b64decode(_DATA_URL_PREFIX.sub("", url))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# =============================================================================
# RETRY CLIENT
# =============================================================================

class RetryClient:
    """Runs calls through the attempt loop.

    Args:
        backend: Main backend invoker.
        fallback_backend: Optional backend for every attempt after the first.
        backoff_base: Base delay in seconds between attempts (0 disables).
        http_client: Optional shared client for downloading image URLs.

    Usage::

        client = RetryClient(backend, fallback_backend=cheaper_backend)
        text = await client.prompt_text_retry("Write a haiku", max_retries=2)
    """

    def __init__(
        self,
        backend: BackendInvoker,
        fallback_backend: Optional[BackendInvoker] = None,
        *,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.backend = backend
        self.fallback_backend = fallback_backend
        self.backoff_base = backoff_base
        self.http_client = http_client

    async def execute(
        self,
        messages: Union[str, Sequence[Message]],
        *,
        response_type: ResponseType = "raw",
        options: Optional[RetryOptions] = None,
    ) -> InvocationResult:
        """Run the attempt loop and return the full result.

        Raises:
            RetryExhaustedError: Every attempt failed recoverably.
            FatalLLMError: A non-recoverable failure on any attempt.
        """
        options = options or RetryOptions()
        initial_messages = normalize_messages(messages)
        with call_scope():
            return await self._run(initial_messages, response_type, options)

    async def _run(
        self,
        initial_messages: list[Message],
        response_type: ResponseType,
        options: RetryOptions,
    ) -> InvocationResult:
        max_retries = options.max_retries
        call_start = time.monotonic()

        log.debug(logger, MODULE, "call_start", "Starting retry loop",
                  response_type=response_type, max_retries=max_retries,
                  has_fallback=self.fallback_backend is not None,
                  message_count=len(initial_messages))

        last_error: Optional[AttemptError] = None

        for attempt in range(max_retries + 1):
            backend, mode = route_attempt(attempt, self.backend, self.fallback_backend)

            if attempt > 0:
                delay = backoff_delay(attempt, self.backoff_base)
                log.info(logger, MODULE, "retry_wait",
                         f"Retrying... attempt {attempt + 1} of {max_retries + 1}",
                         attempt=attempt + 1, delay_ms=int(delay * 1000), mode=mode)
                if mode == "fallback" and attempt == 1:
                    log.info(logger, MODULE, "backend_fallback",
                             "Switching to fallback backend for remaining attempts")
                if delay > 0:
                    await asyncio.sleep(delay)

            current = Attempt(
                attempt_number=attempt,
                mode=mode,
                conversation=build_attempt_messages(initial_messages, attempt, last_error),
            )
            current_messages = current.conversation
            raw_for_error: Optional[str] = None

            try:
                t0 = time.monotonic()
                completion = completion_to_dict(
                    await backend(copy_conversation(current_messages), **options.params)
                )
                latency_ms = int((time.monotonic() - t0) * 1000)

                assistant = first_message(completion)
                raw_for_error = message_text(assistant) or None

                log.debug(logger, MODULE, "llm_response", "Backend call complete",
                          attempt=attempt + 1, mode=mode, latency_ms=latency_ms,
                          raw_length=len(raw_for_error or ""))

                if response_type == "text":
                    data: Any = extract_text(completion, assistant)
                elif response_type == "image":
                    data = await extract_image(completion, assistant, self.http_client)
                else:
                    data = completion

                conversation = copy_conversation(current_messages)
                if assistant:
                    conversation.append(assistant)

                if options.validate_response is not None:
                    info = RetryResponseInfo(
                        mode=mode,
                        conversation=conversation,
                        attempt_number=attempt,
                    )
                    data = await _maybe_await(options.validate_response(data, info))

                log.info(logger, MODULE, "call_done", "Call succeeded",
                         attempts=attempt + 1, mode=mode,
                         latency_ms=int((time.monotonic() - call_start) * 1000))

                return InvocationResult(
                    data=data,
                    mode=mode,
                    attempt_number=attempt,
                    attempts=attempt + 1,
                    conversation=conversation,
                    raw_output=raw_for_error,
                    latency_ms=latency_ms,
                )

            except RetryableError as e:
                raw = e.raw_response or raw_for_error
                last_error = AttemptError(
                    f"Attempt {attempt + 1} failed: {e.message}",
                    mode,
                    failed_conversation(current_messages, raw),
                    attempt,
                    e,
                    raw,
                    previous=last_error,
                )
                log.warning(logger, MODULE, "attempt_failed",
                            f"Attempt {attempt + 1} failed",
                            attempt=attempt + 1, mode=mode, kind=e.type,
                            error=e.message[:200],
                            remaining=max_retries - attempt)

            except Exception as e:
                cause = e.cause if isinstance(e, FatalLLMError) and e.cause else e
                message = str(e) or "An unexpected error occurred during LLM execution"
                raw = raw_for_error or getattr(e, "raw_response", None)
                log.error(logger, MODULE, "call_fatal", "Non-recoverable error, aborting",
                          error=message, error_type=type(cause).__name__,
                          attempt=attempt + 1, mode=mode)
                raise FatalLLMError(message, cause, current_messages, raw) from cause

        log.error(logger, MODULE, "call_exhausted", "All attempts failed",
                  attempts=max_retries + 1)
        raise RetryExhaustedError(
            f"Operation failed after {max_retries + 1} attempts.",
            last_error,
        ) from last_error

    async def prompt_retry(self, content: Union[str, Sequence[Message]], **kwargs: Any) -> Any:
        """Raw mode: returns the completion (or whatever ``validate`` returns)."""
        result = await self.execute(
            content, response_type="raw", options=RetryOptions.from_kwargs(**kwargs)
        )
        return result.data

    async def prompt_text_retry(self, content: Union[str, Sequence[Message]], **kwargs: Any) -> Any:
        """Text mode: returns the assistant text (or whatever ``validate`` returns)."""
        result = await self.execute(
            content, response_type="text", options=RetryOptions.from_kwargs(**kwargs)
        )
        return result.data

    async def prompt_image_retry(self, content: Union[str, Sequence[Message]], **kwargs: Any) -> Any:
        """Image mode: returns image bytes (or whatever ``validate`` returns)."""
        result = await self.execute(
            content, response_type="image", options=RetryOptions.from_kwargs(**kwargs)
        )
        return result.data
