"""Pydantic schemas for the retry engine's data model.

This package contains:
- conversation.py: messages, attempts, hook info and call results
- options.py: per-call options shared by every entry point
"""

from resilient_llm.schemas.conversation import (
    Role,
    Mode,
    ContentPart,
    Message,
    MessageContent,
    Conversation,
    copy_conversation,
    Attempt,
    RetryResponseInfo,
    InvocationResult,
)

from resilient_llm.schemas.options import (
    DEFAULT_MAX_RETRIES,
    RetryOptions,
)

__all__ = [
    # Conversation
    "Role",
    "Mode",
    "ContentPart",
    "Message",
    "MessageContent",
    "Conversation",
    "copy_conversation",
    "Attempt",
    "RetryResponseInfo",
    "InvocationResult",
    # Options
    "DEFAULT_MAX_RETRIES",
    "RetryOptions",
]
