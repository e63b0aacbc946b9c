"""Pydantic schemas for conversations, attempts and call results.

Messages stay plain OpenAI-style dicts so they can be handed to any backend
untouched:

    {"role": "user", "content": "Summarise this"}
    {"role": "user", "content": [{"type": "text", "text": "..."},
                                 {"type": "image_url", "image_url": {"url": "..."}}]}

The models here describe what the retry loop knows about a single attempt
and what it hands back to the caller once the call resolves.
"""

import copy
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# MESSAGES
# =============================================================================

Role = Literal["system", "user", "assistant"]

ContentPart = dict[str, Any]
MessageContent = Union[str, list[ContentPart], None]
Message = dict[str, Any]
Conversation = list[Message]

# Which backend answered an attempt
Mode = Literal["main", "fallback"]


def copy_conversation(conversation: Conversation) -> Conversation:
    """Deep-copy a conversation so later appends never alias a snapshot."""
    return copy.deepcopy(list(conversation))


# =============================================================================
# ATTEMPTS
# =============================================================================

class Attempt(BaseModel):
    """One pass through the retry loop. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    attempt_number: int = Field(ge=0, description="0-indexed attempt counter")
    mode: Mode = "main"
    conversation: Conversation = Field(default_factory=list)


class RetryResponseInfo(BaseModel):
    """Context handed to a ``validate(data, info)`` hook.

    ``conversation`` already ends with the assistant reply being validated.
    """

    model_config = ConfigDict(frozen=True)

    mode: Mode
    conversation: Conversation
    attempt_number: int


# =============================================================================
# RESULTS
# =============================================================================

class InvocationResult(BaseModel):
    """Result of a successful call through the retry loop."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: Optional[Any] = None
    mode: Mode = "main"
    attempt_number: int = 0
    attempts: int = 1
    conversation: Conversation = Field(default_factory=list)
    raw_output: Optional[str] = None
    latency_ms: int = 0

    @property
    def used_fallback(self) -> bool:
        return self.mode == "fallback"
