"""Shared fixtures: scripted backends that stand in for a real model."""

import copy
from typing import Any

import pytest

from resilient_llm.llm.invoker import StructuredClient
from resilient_llm.llm.retry import RetryClient


def completion(content: Any = None, **message_extra: Any) -> dict:
    """Minimal OpenAI-style completion with one choice."""
    message = {"role": "assistant", "content": content, **message_extra}
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
    }


class ScriptedBackend:
    """Backend invoker that replays a fixed script of replies.

    Each item is a reply string, an exception to raise, or anything else,
    which is returned as the completion unchanged. Every call is recorded
    with the messages and params it received.
    """

    def __init__(self, *script: Any, name: str = "main"):
        self.script = list(script)
        self.name = name
        self.calls: list[dict] = []

    async def __call__(self, messages, **params):
        self.calls.append({"messages": copy.deepcopy(messages), "params": dict(params)})
        if not self.script:
            raise AssertionError(f"{self.name} backend called more often than scripted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return completion(item)
        return item

    @property
    def call_count(self) -> int:
        return len(self.calls)


@pytest.fixture
def person_schema():
    return {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "age": {"type": "number"},
        },
        "required": ["age"],
    }


@pytest.fixture
def make_retry_client():
    def _make(*script, fallback=None):
        backend = ScriptedBackend(*script)
        return RetryClient(backend, fallback, backoff_base=0), backend

    return _make


@pytest.fixture
def make_structured_client():
    def _make(*script, fallback=None, disable_json_fixer=False):
        backend = ScriptedBackend(*script)
        client = StructuredClient(
            backend,
            fallback,
            disable_json_fixer=disable_json_fixer,
            backoff_base=0,
        )
        return client, backend

    return _make
