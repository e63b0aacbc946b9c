"""LLM invocation package.

This package turns an unreliable text generator into something that returns
validated data or fails loudly:

  from resilient_llm.llm import StructuredClient, PromptInput

  client = StructuredClient(backend, fallback_backend=backup)

  # JSON Schema
  data = await client.prompt_json(messages, schema, max_retries=2)

  # Pydantic model
  invoice = await client.prompt_model(PromptInput.from_prompt(text, Invoice))

  # Plain text, retried on empty output
  text = await client.prompt_text_retry("Write a haiku")

Architecture:
  protocols.py  → backend-invoker contract and completion accessors
  client.py     → ChatOpenAI configuration, default backend invoker
  messages.py   → per-attempt conversation construction
  parser.py     → tolerant JSON parsing (fences, <think> tags)
  validators.py → pluggable schema validators (jsonschema, pydantic)
  repair.py     → one-shot fixer for syntax and schema failures
  retry.py      → attempt loop, fallback routing, backoff
  invoker.py    → JSON-schema and typed-schema entry points
  errors.py     → recoverable / exhausted / fatal taxonomy

Defense in depth, per attempt:
  1. PROMPT: schema footer + response_format hint
  2. PARSE: strip wrappers, parse, fixer on syntax errors
  3. SCHEMA: validator, fixer on schema violations
  4. RETRY: replay the failure to the model as a user turn
  5. FALLBACK: later attempts go to the secondary backend, if any
"""

# Client access
from resilient_llm.llm.client import (
    ChatBackend,
    get_llm,
    get_fallback_llm,
    get_backend,
    get_fallback_backend,
)

# Entry points
from resilient_llm.llm.invoker import (
    StructuredClient,
    create_structured_client,
    invoke_llm,
    semantic_check,
)
from resilient_llm.llm.retry import (
    RetryClient,
    route_attempt,
    backoff_delay,
)
from resilient_llm.llm.messages import (
    PromptInput,
    normalize_messages,
    with_schema_instructions,
)
from resilient_llm.llm.protocols import BackendInvoker

# Errors
from resilient_llm.llm.errors import (
    ErrorKind,
    LLMError,
    RetryableError,
    AttemptError,
    RetryExhaustedError,
    FatalLLMError,
    SchemaValidationError,
    JSONExtractionError,
)

# Parsing and validation
from resilient_llm.llm.parser import parse_json
from resilient_llm.llm.repair import JsonRepairer
from resilient_llm.llm.validators import (
    SchemaValidator,
    JsonSchemaValidator,
    PydanticValidator,
    CallableValidator,
    as_validator,
)

__all__ = [
    # Client
    "ChatBackend",
    "get_llm",
    "get_fallback_llm",
    "get_backend",
    "get_fallback_backend",
    # Entry points
    "StructuredClient",
    "create_structured_client",
    "invoke_llm",
    "semantic_check",
    "RetryClient",
    "route_attempt",
    "backoff_delay",
    "PromptInput",
    "normalize_messages",
    "with_schema_instructions",
    "BackendInvoker",
    # Errors
    "ErrorKind",
    "LLMError",
    "RetryableError",
    "AttemptError",
    "RetryExhaustedError",
    "FatalLLMError",
    "SchemaValidationError",
    "JSONExtractionError",
    # Parsing and validation
    "parse_json",
    "JsonRepairer",
    "SchemaValidator",
    "JsonSchemaValidator",
    "PydanticValidator",
    "CallableValidator",
    "as_validator",
]
