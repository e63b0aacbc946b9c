"""resilient-llm: conversational retry and structured-output repair for LLMs."""

from resilient_llm.llm import (
    StructuredClient,
    RetryClient,
    PromptInput,
    ChatBackend,
    invoke_llm,
    create_structured_client,
    RetryableError,
    AttemptError,
    RetryExhaustedError,
    FatalLLMError,
    SchemaValidationError,
)
from resilient_llm.schemas import InvocationResult, RetryOptions, RetryResponseInfo

__version__ = "0.1.0"

__all__ = [
    "StructuredClient",
    "RetryClient",
    "PromptInput",
    "ChatBackend",
    "invoke_llm",
    "create_structured_client",
    "RetryableError",
    "AttemptError",
    "RetryExhaustedError",
    "FatalLLMError",
    "SchemaValidationError",
    "InvocationResult",
    "RetryOptions",
    "RetryResponseInfo",
]
