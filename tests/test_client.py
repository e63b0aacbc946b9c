"""Tests for the ChatOpenAI-backed backend invoker."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from resilient_llm.llm import client as client_module
from resilient_llm.llm.client import (
    ChatBackend,
    ai_message_to_completion,
    get_fallback_backend,
    get_fallback_llm,
    get_llm,
)
from resilient_llm.llm.invoker import create_structured_client


class FakeChatModel:
    """Records ainvoke calls and answers with a fixed AIMessage."""

    def __init__(self, reply: AIMessage):
        self.reply = reply
        self.calls = []

    async def ainvoke(self, messages, **kwargs):
        self.calls.append((messages, kwargs))
        return self.reply


def test_get_llm_uses_overrides():
    llm = get_llm(temperature=0.5, model="test-model", base_url="http://localhost:8080/v1")
    assert isinstance(llm, ChatOpenAI)
    assert llm.model_name == "test-model"
    assert llm.temperature == 0.5


def test_fallback_unset(monkeypatch):
    monkeypatch.setattr(client_module, "FALLBACK_MODEL", None)
    assert get_fallback_llm() is None
    assert get_fallback_backend() is None


def test_fallback_configured(monkeypatch):
    monkeypatch.setattr(client_module, "FALLBACK_MODEL", "backup-model")
    llm = get_fallback_llm()
    assert llm.model_name == "backup-model"
    assert get_fallback_backend().name == "fallback"


def test_create_structured_client(monkeypatch):
    monkeypatch.setattr(client_module, "FALLBACK_MODEL", None)
    client = create_structured_client(disable_json_fixer=True)
    assert isinstance(client.retry_client.backend, ChatBackend)
    assert client.retry_client.fallback_backend is None
    assert client.repairer.disable_fixer is True


def test_ai_message_to_completion():
    message = AIMessage(
        content='{"a": 1}',
        id="run-1",
        response_metadata={"model_name": "gpt-test", "finish_reason": "stop"},
        usage_metadata={"input_tokens": 3, "output_tokens": 4, "total_tokens": 7},
    )

    completion = ai_message_to_completion(message)

    assert completion["model"] == "gpt-test"
    assert completion["choices"][0]["message"] == {"role": "assistant", "content": '{"a": 1}'}
    assert completion["choices"][0]["finish_reason"] == "stop"
    assert completion["usage"]["total_tokens"] == 7


def test_ai_message_images_carried_over():
    images = [{"type": "image_url", "image_url": {"url": "data:image/png;base64,aGk="}}]
    message = AIMessage(content="", additional_kwargs={"images": images})
    assert ai_message_to_completion(message)["choices"][0]["message"]["images"] == images


@pytest.mark.asyncio
async def test_chat_backend_converts_messages():
    fake = FakeChatModel(AIMessage(content="hello"))
    backend = ChatBackend(fake)

    completion = await backend(
        [{"role": "system", "content": "Be brief"}, {"role": "user", "content": "hi"}],
        response_format={"type": "json_object"},
        temperature=0.0,
    )

    sent, kwargs = fake.calls[0]
    assert isinstance(sent[0], SystemMessage)
    assert isinstance(sent[1], HumanMessage)
    assert sent[1].content == "hi"
    assert kwargs == {"response_format": {"type": "json_object"}, "temperature": 0.0}
    assert completion["choices"][0]["message"]["content"] == "hello"


@pytest.mark.asyncio
async def test_chat_backend_in_retry_loop():
    from resilient_llm.llm.retry import RetryClient

    fake = FakeChatModel(AIMessage(content="hello"))
    client = RetryClient(ChatBackend(fake), backoff_base=0)

    assert await client.prompt_text_retry("hi") == "hello"
