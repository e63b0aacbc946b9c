"""Error taxonomy for the retry engine.

Every failure a caller can see falls into one of three kinds:

  RECOVERABLE → RetryableError
      The model produced something wrong but fixable (bad JSON, schema
      mismatch, no content). Its message is replayed to the model as the
      next user turn. Counted against max_retries.

  EXHAUSTED → RetryExhaustedError
      Every attempt ended in a recoverable failure. Carries the full chain
      of AttemptErrors so the whole history can be inspected.

  FATAL → FatalLLMError
      Anything else: auth failures, network faults, bugs in hooks. Raised on
      first occurrence, never retried.

Each class carries an explicit ``kind`` tag so callers can dispatch on
``err.kind`` without caring about the class hierarchy.

The attempt chain is an explicit linked list (``AttemptError.previous``,
most recent first) rather than relying only on ``__cause__``; ``__cause__``
is set as well so tracebacks read naturally.
"""

import enum
from typing import Any, Iterator, Literal, Optional

from resilient_llm.schemas.conversation import Attempt, Conversation, Mode, copy_conversation

RetryErrorType = Literal["JSON_PARSE_ERROR", "CUSTOM_ERROR"]


class ErrorKind(str, enum.Enum):
    RECOVERABLE = "recoverable"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    ATTEMPT = "attempt"


class LLMError(Exception):
    """Base for all errors raised by this package."""

    kind: ErrorKind = ErrorKind.FATAL


class RetryableError(LLMError):
    """A failure the model can be asked to correct.

    Raise this from a ``validate`` hook to request another attempt.

    Args:
        message: Fed back verbatim to the model as the next user message.
        type: ``JSON_PARSE_ERROR`` or ``CUSTOM_ERROR``.
        details: Optional structured payload (e.g. validator error list).
        raw_response: The offending text, shown to the model as its
            previous assistant turn.
    """

    kind = ErrorKind.RECOVERABLE

    def __init__(
        self,
        message: str,
        type: RetryErrorType = "CUSTOM_ERROR",
        details: Any = None,
        raw_response: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.type = type
        self.details = details
        self.raw_response = raw_response

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "type": self.type,
            "message": self.message,
            "details": self.details,
            "raw_response": self.raw_response,
        }


class AttemptError(LLMError):
    """One failed attempt, linked to the attempt that failed before it."""

    kind = ErrorKind.ATTEMPT

    def __init__(
        self,
        message: str,
        mode: Mode,
        conversation: Conversation,
        attempt_number: int,
        error: RetryableError,
        raw_response: Optional[str] = None,
        previous: Optional["AttemptError"] = None,
    ):
        super().__init__(message)
        self.message = message
        self.mode = mode
        self.conversation = copy_conversation(conversation)
        self.attempt_number = attempt_number
        self.error = error
        self.raw_response = raw_response
        self.previous = previous
        self.__cause__ = previous

    @property
    def attempt(self) -> Attempt:
        return Attempt(
            attempt_number=self.attempt_number,
            mode=self.mode,
            conversation=self.conversation,
        )

    def chain(self) -> Iterator["AttemptError"]:
        """Walk the chain from this attempt back to the first one."""
        node: Optional[AttemptError] = self
        while node is not None:
            yield node
            node = node.previous

    def history(self) -> list["AttemptError"]:
        """All attempts up to and including this one, oldest first."""
        return list(reversed(list(self.chain())))

    @property
    def depth(self) -> int:
        return sum(1 for _ in self.chain())

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "mode": self.mode,
            "attempt_number": self.attempt_number,
            "conversation": self.conversation,
            "raw_response": self.raw_response,
            "error": self.error.to_dict(),
        }


class RetryExhaustedError(LLMError):
    """Raised when every attempt failed with a recoverable error."""

    kind = ErrorKind.EXHAUSTED

    def __init__(self, message: str, last_error: Optional[AttemptError] = None):
        super().__init__(message)
        self.message = message
        self.last_error = last_error
        self.__cause__ = last_error

    @property
    def attempts(self) -> int:
        return self.last_error.depth if self.last_error else 0

    def history(self) -> list[AttemptError]:
        """Every failed attempt, oldest first."""
        return self.last_error.history() if self.last_error else []

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "attempts": [a.to_dict() for a in self.history()],
        }


class FatalLLMError(LLMError):
    """A non-recoverable failure, with the conversation it happened in.

    Args:
        message: The original error's message.
        cause: The original exception.
        conversation: Messages sent on the attempt that failed.
        raw_response: Any assistant text captured before the failure.
    """

    kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        conversation: Optional[Conversation] = None,
        raw_response: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.conversation = copy_conversation(conversation or [])
        self.raw_response = raw_response
        self.__cause__ = cause

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "cause_type": type(self.cause).__name__ if self.cause else None,
            "conversation": self.conversation,
            "raw_response": self.raw_response,
        }


class SchemaValidationError(LLMError):
    """Parsed data does not match the expected schema.

    The only validator failure that triggers the fixer and a conversational
    retry in JSON modes, where it is turned into a ``RetryableError``. Raised
    anywhere else (e.g. from a ``validate`` hook) it is fatal, and its ``kind``
    says so.

    Args:
        message: Human/LLM-readable summary of the problems.
        errors: Structured error payload from the validator library.
    """

    kind = ErrorKind.FATAL

    def __init__(self, message: str, errors: Any = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class JSONExtractionError(LLMError):
    """Raised when text cannot be turned into JSON.

    JSON modes convert it into a JSON_PARSE_ERROR ``RetryableError``; on its
    own it is fatal like any other non-retryable error.
    """

    kind = ErrorKind.FATAL

    def __init__(self, message: str, raw_output: str):
        super().__init__(message)
        self.message = message
        self.raw_output = raw_output
