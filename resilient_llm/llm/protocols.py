"""Backend invoker protocol and completion accessors.

The engine never talks HTTP itself. It calls a *backend invoker*: any async
callable that takes the conversation plus pass-through parameters and returns
an OpenAI-style chat completion:

    {
        "id": "...",
        "choices": [{"message": {"role": "assistant", "content": "..."}}],
        "usage": {...},
    }

Objects with ``model_dump()`` (e.g. the openai SDK's ChatCompletion) are
accepted too and converted to a dict before anything reads them.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from resilient_llm.schemas.conversation import Conversation, Message


@runtime_checkable
class BackendInvoker(Protocol):
    """Protocol for pluggable text-generation backends.

    Timeouts and request-level options travel in ``params`` and are the
    backend's business. Cancellation is asyncio task cancellation.
    """

    async def __call__(
        self,
        messages: Conversation,
        *,
        response_format: Optional[dict] = None,
        **params: Any,
    ) -> Any:
        """Send messages, return a completion."""
        ...


def completion_to_dict(completion: Any) -> dict:
    """Normalise a completion object to a plain dict.

    Raises:
        TypeError: The backend returned something that is not a completion.
    """
    if isinstance(completion, dict):
        return completion
    if hasattr(completion, "model_dump"):
        return completion.model_dump()
    raise TypeError(
        f"Backend returned {type(completion).__name__}; expected a chat completion dict"
    )


def first_message(completion: dict) -> Optional[Message]:
    """``choices[0].message`` or None when the completion has no choices."""
    choices = completion.get("choices") or []
    if not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    return dict(message) if message else None


def message_text(message: Optional[Message]) -> Optional[str]:
    """Text content of a message.

    Multi-part content is flattened by joining its text parts. Returns None
    when there is no text at all, including content of any other type.
    """
    if not message:
        return None
    content = message.get("content")
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return "".join(texts) if texts else None
    return None
