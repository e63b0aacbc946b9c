"""Conversation construction for each attempt.

Attempt 0 sends the caller's messages (plus schema instructions in JSON
modes). Every later attempt replays the previous failed attempt verbatim,
including the model's bad reply as the assistant turn, and adds the
error feedback as one new user turn:

  attempt 0:  [system, user]
  attempt 1:  [system, user, assistant(failed), user(feedback)]
  attempt 2:  [system, user, assistant(failed), user(feedback),
               assistant(failed), user(feedback)]

Inputs are never mutated; every function returns a fresh list.
"""

import json
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict

from resilient_llm.llm.errors import AttemptError
from resilient_llm.prompts.structured_output import (
    JSON_SCHEMA_FOOTER,
    PROMPT_ONLY_INSTRUCTION,
    SCHEMA_ONLY_INSTRUCTION,
    SCHEMA_ONLY_PAYLOAD,
)
from resilient_llm.schemas.conversation import (
    Conversation,
    Message,
    MessageContent,
    copy_conversation,
)


def normalize_messages(content: Union[str, Sequence[Message]]) -> Conversation:
    """A bare string becomes a single user message; a list is copied."""
    if isinstance(content, str):
        return [{"role": "user", "content": content}]
    if not content:
        raise ValueError("At least one message is required")
    return copy_conversation(content)


def build_attempt_messages(
    initial_messages: Conversation,
    attempt_number: int,
    previous_error: Optional[AttemptError] = None,
) -> Conversation:
    """Messages to send on ``attempt_number``.

    Raises:
        RuntimeError: A retry attempt without the failure it retries.
    """
    if attempt_number == 0:
        return copy_conversation(initial_messages)

    if previous_error is None:
        raise RuntimeError("previous_error is missing for a retry attempt")

    messages = copy_conversation(previous_error.conversation)
    messages.append({"role": "user", "content": previous_error.error.message})
    return messages


def failed_conversation(messages: Conversation, raw_response: Optional[str]) -> Conversation:
    """Snapshot of a failed attempt: what was sent plus the bad reply, if any."""
    snapshot = copy_conversation(messages)
    if raw_response:
        snapshot.append({"role": "assistant", "content": raw_response})
    return snapshot


# =============================================================================
# SCHEMA INSTRUCTIONS
# =============================================================================

def schema_to_json(schema: dict) -> str:
    return json.dumps(schema, ensure_ascii=False)


def schema_footer(schema_json: str) -> str:
    return JSON_SCHEMA_FOOTER.format(schema_json=schema_json)


def _append_text(content: MessageContent, text: str) -> MessageContent:
    if isinstance(content, list):
        return [*content, {"type": "text", "text": text}]
    return f"{content or ''}\n{text}"


def with_schema_instructions(messages: Conversation, schema_json: str) -> Conversation:
    """Add the schema footer to the first system message, or prepend one."""
    final = copy_conversation(messages)
    footer = schema_footer(schema_json)

    for i, message in enumerate(final):
        if message.get("role") == "system":
            final[i] = {**message, "content": _append_text(message.get("content"), footer)}
            return final

    final.insert(0, {"role": "system", "content": footer})
    return final


# =============================================================================
# TYPED PROMPT INPUT
# =============================================================================

class PromptInput(BaseModel):
    """Normalised input for a typed-schema call.

    One named constructor per supported call shape:

      PromptInput.from_schema(Model)
      PromptInput.from_prompt("Extract the invoice", Model)
      PromptInput.from_system_user("You are ...", "Text: ...", Model)
      PromptInput.from_messages([...], Model)
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    messages: Conversation
    schema_type: Any

    @classmethod
    def from_schema(cls, schema: Any) -> "PromptInput":
        return cls.from_system_user(SCHEMA_ONLY_INSTRUCTION, SCHEMA_ONLY_PAYLOAD, schema)

    @classmethod
    def from_prompt(cls, prompt: str, schema: Any) -> "PromptInput":
        return cls.from_system_user(PROMPT_ONLY_INSTRUCTION, prompt, schema)

    @classmethod
    def from_system_user(
        cls, system: str, user: MessageContent, schema: Any
    ) -> "PromptInput":
        return cls(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            schema_type=schema,
        )

    @classmethod
    def from_messages(cls, messages: Sequence[Message], schema: Any) -> "PromptInput":
        return cls(messages=normalize_messages(messages), schema_type=schema)
