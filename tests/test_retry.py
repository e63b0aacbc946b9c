"""Tests for the conversational retry loop."""

import asyncio

import httpx
import pytest

from conftest import ScriptedBackend, completion
from resilient_llm.llm import retry as retry_module
from resilient_llm.llm.errors import (
    ErrorKind,
    FatalLLMError,
    RetryableError,
    RetryExhaustedError,
)
from resilient_llm.llm.retry import RetryClient, backoff_delay, route_attempt
from resilient_llm.schemas.options import RetryOptions


def require_good(data, info):
    if data != "good":
        raise RetryableError("Say good")
    return data


# =============================================================================
# SUCCESS PATH
# =============================================================================

@pytest.mark.asyncio
async def test_text_first_attempt(make_retry_client):
    client, backend = make_retry_client("hello")

    result = await client.execute("hi", response_type="text")

    assert result.data == "hello"
    assert result.attempts == 1
    assert result.attempt_number == 0
    assert result.mode == "main"
    assert not result.used_fallback
    assert result.raw_output == "hello"
    assert result.conversation == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    assert backend.calls[0]["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_raw_mode_returns_completion(make_retry_client):
    client, _ = make_retry_client("hello")
    data = await client.prompt_retry("hi")
    assert data["choices"][0]["message"]["content"] == "hello"


@pytest.mark.asyncio
async def test_validate_result_replaces_data(make_retry_client):
    client, _ = make_retry_client("hello")
    data = await client.prompt_retry(
        "hi", validate=lambda c, info: c["choices"][0]["message"]["content"].upper()
    )
    assert data == "HELLO"


@pytest.mark.asyncio
async def test_async_validate_hook(make_retry_client):
    client, _ = make_retry_client("bad", "good")

    async def check(data, info):
        await asyncio.sleep(0)
        return require_good(data, info)

    assert await client.prompt_text_retry("hi", validate=check) == "good"


@pytest.mark.asyncio
async def test_validate_hook_receives_info(make_retry_client):
    client, _ = make_retry_client("hello")
    seen = []

    def hook(data, info):
        seen.append(info)
        return data

    await client.prompt_text_retry("hi", validate=hook)

    assert seen[0].attempt_number == 0
    assert seen[0].mode == "main"
    assert seen[0].conversation[-1] == {"role": "assistant", "content": "hello"}


@pytest.mark.asyncio
async def test_params_pass_through(make_retry_client):
    client, backend = make_retry_client("hello")
    await client.prompt_text_retry("hi", temperature=0.3, model="small", max_retries=1)
    assert backend.calls[0]["params"] == {"temperature": 0.3, "model": "small"}


@pytest.mark.asyncio
async def test_model_dump_completion_is_accepted(make_retry_client):
    class Completion:
        def model_dump(self):
            return completion("dumped")

    client, _ = make_retry_client(Completion())
    assert await client.prompt_text_retry("hi") == "dumped"


@pytest.mark.asyncio
async def test_model_dump_completion_in_raw_mode(make_retry_client):
    class Completion:
        def model_dump(self):
            return completion("dumped")

    client, _ = make_retry_client(Completion())
    data = await client.prompt_retry("hi")
    assert data["choices"][0]["message"]["content"] == "dumped"


@pytest.mark.asyncio
async def test_caller_messages_not_mutated(make_retry_client):
    messages = [{"role": "system", "content": "Be brief"}, {"role": "user", "content": "hi"}]
    snapshot = [dict(m) for m in messages]
    client, _ = make_retry_client("bad", "good")

    await client.prompt_text_retry(messages, validate=require_good)

    assert messages == snapshot


@pytest.mark.asyncio
async def test_empty_message_list_rejected(make_retry_client):
    client, backend = make_retry_client("hello")
    with pytest.raises(ValueError):
        await client.prompt_text_retry([])
    assert backend.call_count == 0


# =============================================================================
# RETRY AND EXHAUSTION
# =============================================================================

@pytest.mark.asyncio
async def test_retry_replays_failed_conversation(make_retry_client):
    client, backend = make_retry_client("bad", "good")

    result = await client.execute(
        "hi", response_type="text", options=RetryOptions(validate_response=require_good)
    )

    assert result.data == "good"
    assert result.attempt_number == 1
    assert backend.calls[1]["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "bad"},
        {"role": "user", "content": "Say good"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [0, 1, 3])
async def test_calls_bounded_by_max_retries(make_retry_client, max_retries):
    client, backend = make_retry_client(*["bad"] * (max_retries + 1))

    with pytest.raises(RetryExhaustedError) as exc_info:
        await client.prompt_text_retry("hi", max_retries=max_retries, validate=require_good)

    assert backend.call_count == max_retries + 1
    assert exc_info.value.attempts == max_retries + 1
    assert exc_info.value.kind == ErrorKind.EXHAUSTED


@pytest.mark.asyncio
async def test_exhausted_error_chain(make_retry_client):
    client, _ = make_retry_client("bad", "bad", "bad")

    with pytest.raises(RetryExhaustedError) as exc_info:
        await client.prompt_text_retry("hi", max_retries=2, validate=require_good)

    err = exc_info.value
    assert str(err) == "Operation failed after 3 attempts."
    assert err.__cause__ is err.last_error
    assert [a.attempt_number for a in err.history()] == [0, 1, 2]
    assert err.last_error.message == "Attempt 3 failed: Say good"
    assert err.last_error.previous.attempt_number == 1
    assert err.last_error.error.message == "Say good"
    # sent 5 messages on the last attempt, plus the failed reply
    assert len(err.last_error.conversation) == 6
    assert err.last_error.conversation[-1] == {"role": "assistant", "content": "bad"}


@pytest.mark.asyncio
async def test_no_text_content_is_retryable(make_retry_client):
    client, backend = make_retry_client(completion(None), "ok")

    assert await client.prompt_text_retry("hi") == "ok"
    assert backend.calls[1]["messages"][-1] == {
        "role": "user",
        "content": "LLM returned no text content.",
    }


@pytest.mark.asyncio
async def test_non_text_content_is_retryable(make_retry_client):
    client, backend = make_retry_client(completion(42), "ok")

    assert await client.prompt_text_retry("hi") == "ok"
    assert backend.calls[1]["messages"][-1]["content"] == "LLM returned no text content."


@pytest.mark.asyncio
async def test_backoff_between_attempts(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(retry_module.asyncio, "sleep", fake_sleep)
    backend = ScriptedBackend("bad", "bad", "good")
    client = RetryClient(backend, backoff_base=0.5)

    await client.prompt_text_retry("hi", max_retries=2, validate=require_good)

    assert len(sleeps) == 2
    assert 0.5 <= sleeps[0] <= 0.6
    assert 1.0 <= sleeps[1] <= 1.2


def test_backoff_delay():
    assert backoff_delay(0, 1.0) == 0.0
    assert backoff_delay(1, 1.0, rand=lambda: 0.0) == 1.0
    assert backoff_delay(3, 1.0, rand=lambda: 1.0) == pytest.approx(4.8)
    assert backoff_delay(2, 0) == 0.0


# =============================================================================
# FALLBACK
# =============================================================================

def test_route_attempt():
    main, fallback = object(), object()
    assert route_attempt(0, main, fallback) == (main, "main")
    assert route_attempt(1, main, fallback) == (fallback, "fallback")
    assert route_attempt(2, main, None) == (main, "main")


@pytest.mark.asyncio
async def test_fallback_answers_retries(make_retry_client):
    fallback = ScriptedBackend("bad", "good", name="fallback")
    client, main = make_retry_client("bad", fallback=fallback)
    modes = []

    def hook(data, info):
        modes.append(info.mode)
        return require_good(data, info)

    result = await client.execute(
        "hi", response_type="text", options=RetryOptions(max_retries=2, validate_response=hook)
    )

    assert result.mode == "fallback"
    assert result.used_fallback
    assert modes == ["main", "fallback", "fallback"]
    assert main.call_count == 1
    assert fallback.call_count == 2


@pytest.mark.asyncio
async def test_attempt_errors_record_mode(make_retry_client):
    fallback = ScriptedBackend("bad", name="fallback")
    client, _ = make_retry_client("bad", fallback=fallback)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await client.prompt_text_retry("hi", max_retries=1, validate=require_good)

    assert [a.mode for a in exc_info.value.history()] == ["main", "fallback"]


# =============================================================================
# FATAL AND CANCELLATION
# =============================================================================

@pytest.mark.asyncio
async def test_backend_exception_is_fatal(make_retry_client):
    boom = ValueError("boom")
    client, backend = make_retry_client(boom, "never")

    with pytest.raises(FatalLLMError) as exc_info:
        await client.prompt_text_retry("hi", max_retries=3)

    err = exc_info.value
    assert backend.call_count == 1
    assert err.kind == ErrorKind.FATAL
    assert err.message == "boom"
    assert err.cause is boom
    assert err.__cause__ is boom
    assert err.conversation == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_hook_exception_on_retry_is_fatal(make_retry_client):
    client, backend = make_retry_client("bad", "good")

    def hook(data, info):
        if info.attempt_number == 1:
            raise RuntimeError("hook broke")
        return require_good(data, info)

    with pytest.raises(FatalLLMError) as exc_info:
        await client.prompt_text_retry("hi", validate=hook)

    assert backend.call_count == 2
    assert exc_info.value.message == "hook broke"
    assert exc_info.value.raw_response == "good"
    assert len(exc_info.value.conversation) == 3


@pytest.mark.asyncio
async def test_fatal_error_cause_is_unwrapped(make_retry_client):
    root = ValueError("root")
    client, _ = make_retry_client("hello")

    def hook(data, info):
        raise FatalLLMError("inner", cause=root)

    with pytest.raises(FatalLLMError) as exc_info:
        await client.prompt_text_retry("hi", validate=hook)

    assert exc_info.value.message == "inner"
    assert exc_info.value.cause is root


@pytest.mark.asyncio
async def test_fatal_error_default_message(make_retry_client):
    client, _ = make_retry_client(RuntimeError())
    with pytest.raises(FatalLLMError) as exc_info:
        await client.prompt_text_retry("hi")
    assert exc_info.value.message == "An unexpected error occurred during LLM execution"


@pytest.mark.asyncio
async def test_non_completion_is_fatal():
    async def backend(messages, **params):
        return 42

    client = RetryClient(backend, backoff_base=0)

    with pytest.raises(FatalLLMError) as exc_info:
        await client.prompt_text_retry("hi")

    assert isinstance(exc_info.value.cause, TypeError)


@pytest.mark.asyncio
async def test_cancelled_error_passes_through(make_retry_client):
    client, backend = make_retry_client(asyncio.CancelledError(), "never")
    with pytest.raises(asyncio.CancelledError):
        await client.prompt_text_retry("hi")
    assert backend.call_count == 1


@pytest.mark.asyncio
async def test_task_cancellation():
    started = asyncio.Event()

    async def slow_backend(messages, **params):
        started.set()
        await asyncio.sleep(10)
        return completion("late")

    client = RetryClient(slow_backend, backoff_base=0)
    task = asyncio.create_task(client.prompt_text_retry("hi"))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


# =============================================================================
# IMAGES
# =============================================================================

def image_completion(url):
    return completion(None, images=[{"type": "image_url", "image_url": {"url": url}}])


@pytest.mark.asyncio
async def test_image_data_url(make_retry_client):
    client, _ = make_retry_client(image_completion("data:image/png;base64,aGVsbG8="))
    assert await client.prompt_image_retry("draw") == b"hello"


@pytest.mark.asyncio
async def test_image_http_url():
    def handler(request):
        assert str(request.url) == "https://cdn.example.com/cat.png"
        return httpx.Response(200, content=b"PNGDATA")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        backend = ScriptedBackend(image_completion("https://cdn.example.com/cat.png"))
        client = RetryClient(backend, backoff_base=0, http_client=http_client)
        assert await client.prompt_image_retry("draw") == b"PNGDATA"


@pytest.mark.asyncio
async def test_missing_image_is_retryable(make_retry_client):
    client, backend = make_retry_client(
        completion("I cannot draw"),
        image_completion("data:image/png;base64,aGVsbG8="),
    )

    assert await client.prompt_image_retry("draw") == b"hello"
    assert backend.calls[1]["messages"][-1]["content"] == "LLM returned no image."


@pytest.mark.asyncio
async def test_invalid_image_url(make_retry_client):
    bad = completion(None, images=[{"type": "image_url", "image_url": {"url": 42}}])
    client, _ = make_retry_client(bad)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await client.prompt_image_retry("draw", max_retries=0)

    assert exc_info.value.last_error.error.message == "LLM returned invalid image URL."


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "image_url",
    ["data:image/png;base64,aGVsbG8=", None, ["https://cdn.example.com/cat.png"]],
)
async def test_image_url_not_an_object(make_retry_client, image_url):
    bad = completion(None, images=[{"type": "image_url", "image_url": image_url}])
    client, _ = make_retry_client(bad)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await client.prompt_image_retry("draw", max_retries=0)

    assert exc_info.value.last_error.error.message == "LLM returned invalid image URL."
    assert exc_info.value.last_error.error.type == "CUSTOM_ERROR"


@pytest.mark.asyncio
async def test_schema_error_from_raw_hook_is_fatal(make_retry_client):
    from resilient_llm.llm.errors import SchemaValidationError

    client, backend = make_retry_client("hello", "never")

    def hook(data, info):
        raise SchemaValidationError("wrong shape")

    with pytest.raises(FatalLLMError) as exc_info:
        await client.prompt_text_retry("hi", validate=hook)

    assert backend.call_count == 1
    assert exc_info.value.cause.kind == ErrorKind.FATAL
