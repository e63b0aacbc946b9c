"""LLM client configuration and the default backend invoker.

Any OpenAI-compatible /v1/chat/completions endpoint works (OpenAI,
OpenRouter, llama.cpp, vLLM). We go through LangChain's ChatOpenAI so
sampling params, ``response_format`` and request timeouts are handled by
one well-tested client.

  get_llm()           → main model
  get_fallback_llm()  → secondary model, or None when not configured
  ChatBackend         → adapts a chat model to the backend-invoker contract
                        (message dicts in, completion dict out)

Configuration comes from the environment; function arguments win:

  LLM_BASE_URL           default https://api.openai.com/v1
  LLM_API_KEY            falls back to OPENAI_API_KEY
  LLM_MODEL              default gpt-4o-mini
  LLM_FALLBACK_BASE_URL  default LLM_BASE_URL
  LLM_FALLBACK_MODEL     unset = no fallback backend
  LLM_TIMEOUT            request timeout in seconds, default 120
  LLM_MAX_TOKENS         default 4096
"""

import os
from typing import Any, Optional

from langchain_core.messages import AIMessage, convert_to_messages
from langchain_openai import ChatOpenAI

from resilient_llm.schemas.conversation import Conversation
from resilient_llm.utils.logging import log, get_logger

MODULE = "llm.client"
logger = get_logger()

LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", "not-needed"))
MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

FALLBACK_BASE_URL = os.getenv("LLM_FALLBACK_BASE_URL", LLM_BASE_URL)
FALLBACK_MODEL = os.getenv("LLM_FALLBACK_MODEL")

TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))
MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "4096"))


def get_llm(
    temperature: float = 0.1,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> ChatOpenAI:
    """Get the main LLM client.

    Args:
        temperature: 0.0 = deterministic, 1.0 = creative.
            Default 0.1: structured output wants consistency.
        model: Model name override. Defaults to LLM_MODEL.
        base_url: Endpoint override. Defaults to LLM_BASE_URL.
    """
    client = ChatOpenAI(
        base_url=base_url or LLM_BASE_URL,
        api_key=LLM_API_KEY,
        model=model or MODEL,
        temperature=temperature,
        max_tokens=MAX_TOKENS,
        timeout=TIMEOUT,
    )
    log.debug(logger, MODULE, "llm_init", "LLM client created",
              base_url=base_url or LLM_BASE_URL, model=model or MODEL,
              temperature=temperature)
    return client


def get_fallback_llm(temperature: float = 0.1) -> Optional[ChatOpenAI]:
    """Get the fallback LLM client, or None when LLM_FALLBACK_MODEL is unset."""
    if not FALLBACK_MODEL:
        return None
    return get_llm(temperature=temperature, model=FALLBACK_MODEL, base_url=FALLBACK_BASE_URL)


def ai_message_to_completion(message: AIMessage) -> dict:
    """Map a LangChain AIMessage onto an OpenAI-style completion dict."""
    metadata = message.response_metadata or {}
    assistant: dict[str, Any] = {"role": "assistant", "content": message.content}

    # OpenRouter image models return generated images alongside the text
    images = (message.additional_kwargs or {}).get("images")
    if images:
        assistant["images"] = images

    return {
        "id": message.id,
        "object": "chat.completion",
        "model": metadata.get("model_name"),
        "choices": [{
            "index": 0,
            "message": assistant,
            "finish_reason": metadata.get("finish_reason"),
        }],
        "usage": dict(message.usage_metadata) if message.usage_metadata else None,
    }


class ChatBackend:
    """Backend invoker over a LangChain chat model.

    Params are forwarded to ``ainvoke`` untouched, so ``temperature``,
    ``model``, ``max_tokens``, ``response_format`` and ``timeout`` all reach
    the request payload.

    Usage::

        backend = ChatBackend(get_llm())
        completion = await backend([{"role": "user", "content": "Hi"}])
    """

    def __init__(self, llm: Any, name: str = "main"):
        self.llm = llm
        self.name = name

    async def __call__(
        self,
        messages: Conversation,
        *,
        response_format: Optional[dict] = None,
        **params: Any,
    ) -> dict:
        if response_format is not None:
            params["response_format"] = response_format

        response = await self.llm.ainvoke(convert_to_messages(messages), **params)

        log.debug(logger, MODULE, "backend_response", "Chat model call complete",
                  backend=self.name, message_count=len(messages),
                  content_length=len(response.content) if isinstance(response.content, str) else None)
        return ai_message_to_completion(response)


def get_backend(temperature: float = 0.1, model: Optional[str] = None) -> ChatBackend:
    return ChatBackend(get_llm(temperature=temperature, model=model), name="main")


def get_fallback_backend(temperature: float = 0.1) -> Optional[ChatBackend]:
    llm = get_fallback_llm(temperature=temperature)
    return ChatBackend(llm, name="fallback") if llm is not None else None
