"""Structured-output entry points.

Two escalating ways to get validated data out of a backend, both built on
the retry loop in retry.py:

  prompt_json(messages, schema)  → JSON Schema dict in, conforming data out
  prompt_model(PromptInput)      → pydantic model in, model instance out

Per attempt, the assistant text goes through:

  1. PARSE: tolerant parse; one fixer call on a syntax error
  2. VALIDATE: before_validation hook, then the schema validator; one fixer
     call on a SchemaValidationError
  3. HOOK: optional caller ``validate(data, info)`` on the validated data

A parse failure becomes a JSON_PARSE_ERROR and a schema failure a
CUSTOM_ERROR RetryableError, whose feedback text the retry loop sends back
to the model. Anything else is fatal.
"""

import inspect
import json
from typing import Any, Callable, Optional, Sequence, Type, TypeVar, Union

import httpx
from pydantic import BaseModel

from resilient_llm.llm.client import get_backend, get_fallback_backend
from resilient_llm.llm.errors import JSONExtractionError, RetryableError, SchemaValidationError
from resilient_llm.llm.messages import (
    PromptInput,
    normalize_messages,
    schema_to_json,
    with_schema_instructions,
)
from resilient_llm.llm.parser import to_pretty_json
from resilient_llm.llm.protocols import BackendInvoker
from resilient_llm.llm.repair import JSON_OBJECT_FORMAT, JsonRepairer
from resilient_llm.llm.retry import DEFAULT_BACKOFF_BASE, RetryClient
from resilient_llm.llm.validators import PydanticValidator, SchemaValidator, as_validator
from resilient_llm.prompts.structured_output import (
    JSON_PARSE_FEEDBACK,
    SCHEMA_VALIDATION_FEEDBACK,
    SEMANTIC_VALIDATION_FEEDBACK,
)
from resilient_llm.schemas.conversation import InvocationResult, Message, RetryResponseInfo
from resilient_llm.schemas.options import DEFAULT_MAX_RETRIES, RetryOptions
from resilient_llm.utils.logging import log, get_logger

MODULE = "llm.invoker"
logger = get_logger()

T = TypeVar("T", bound=BaseModel)


class StructuredClient:
    """Retry client with JSON parsing, repair and schema validation.

    Args:
        backend: Main backend invoker. Also used by the fixer.
        fallback_backend: Optional backend for attempts after the first.
        disable_json_fixer: Default for every call; ``disable_json_fixer=``
            per call overrides it.
        backoff_base: Base delay in seconds between attempts.
        http_client: Optional shared client for image downloads.
    """

    def __init__(
        self,
        backend: BackendInvoker,
        fallback_backend: Optional[BackendInvoker] = None,
        *,
        disable_json_fixer: bool = False,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.retry_client = RetryClient(
            backend,
            fallback_backend,
            backoff_base=backoff_base,
            http_client=http_client,
        )
        self.repairer = JsonRepairer(backend, disable_fixer=disable_json_fixer)

    # -------------------------------------------------------------------------
    # Raw / text / image retry
    # -------------------------------------------------------------------------

    async def prompt_retry(self, content: Union[str, Sequence[Message]], **kwargs: Any) -> Any:
        return await self.retry_client.prompt_retry(content, **kwargs)

    async def prompt_text_retry(self, content: Union[str, Sequence[Message]], **kwargs: Any) -> Any:
        return await self.retry_client.prompt_text_retry(content, **kwargs)

    async def prompt_image_retry(self, content: Union[str, Sequence[Message]], **kwargs: Any) -> Any:
        return await self.retry_client.prompt_image_retry(content, **kwargs)

    # -------------------------------------------------------------------------
    # JSON schema
    # -------------------------------------------------------------------------

    def _response_processor(
        self,
        validator: SchemaValidator,
        schema_json: str,
        options: RetryOptions,
    ) -> Callable[[str, RetryResponseInfo], Any]:
        """Build the per-attempt ``validate`` hook for JSON mode."""
        user_hook = options.validate_response

        async def process_response(text: str, info: RetryResponseInfo) -> Any:
            try:
                data = await self.repairer.parse_or_fix(text, schema_json, options)
            except (JSONExtractionError, json.JSONDecodeError) as e:
                raise RetryableError(
                    JSON_PARSE_FEEDBACK.format(details=str(e)),
                    "JSON_PARSE_ERROR",
                    raw_response=text,
                ) from e

            try:
                validated = await self.repairer.validate_or_fix(data, validator, schema_json, options)
            except SchemaValidationError as e:
                raise RetryableError(
                    SCHEMA_VALIDATION_FEEDBACK.format(details=e.message),
                    "CUSTOM_ERROR",
                    details=e.errors,
                    raw_response=to_pretty_json(data),
                ) from e

            if user_hook is not None:
                result = user_hook(validated, info)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return validated

        return process_response

    async def execute_json(
        self,
        messages: Union[str, Sequence[Message]],
        schema: dict,
        *,
        validator: Any = None,
        **kwargs: Any,
    ) -> InvocationResult:
        """Like ``prompt_json`` but returns the full InvocationResult.

        Args:
            messages: A prompt string or a list of message dicts.
            schema: JSON Schema the reply must satisfy; also shown to the model.
            validator: Optional validator replacing the default JSON Schema
                check (pydantic model, SchemaValidator, or function).
            **kwargs: max_retries, use_response_format, disable_json_fixer,
                before_validation, validate, and backend params.
        """
        options = RetryOptions.from_kwargs(**kwargs)
        resolved = as_validator(validator, schema)
        schema_json = schema_to_json(schema)
        final_messages = with_schema_instructions(normalize_messages(messages), schema_json)

        params = dict(options.params)
        params.pop("response_format", None)
        if options.use_response_format:
            params["response_format"] = dict(JSON_OBJECT_FORMAT)

        fixer_options = options.with_overrides(params=params)
        loop_options = fixer_options.with_overrides(
            validate_response=self._response_processor(resolved, schema_json, fixer_options),
        )

        log.debug(logger, MODULE, "json_start", "Structured JSON call",
                  validator=type(resolved).__name__, max_retries=options.max_retries,
                  use_response_format=options.use_response_format)
        return await self.retry_client.execute(
            final_messages, response_type="text", options=loop_options
        )

    async def prompt_json(
        self,
        messages: Union[str, Sequence[Message]],
        schema: dict,
        **kwargs: Any,
    ) -> Any:
        """Get JSON that conforms to ``schema``.

        Raises:
            RetryExhaustedError: No attempt produced conforming JSON.
            FatalLLMError: Backend or hook failure.
        """
        result = await self.execute_json(messages, schema, **kwargs)
        return result.data

    # -------------------------------------------------------------------------
    # Typed (pydantic) schema
    # -------------------------------------------------------------------------

    async def execute_model(self, prompt: PromptInput, **kwargs: Any) -> InvocationResult:
        validator = PydanticValidator(prompt.schema_type)
        return await self.execute_json(
            prompt.messages, validator.json_schema(), validator=validator, **kwargs
        )

    async def prompt_model(self, prompt: PromptInput, **kwargs: Any) -> Any:
        """Get a validated pydantic instance.

        The JSON schema shown to the model is derived from the type, and the
        type itself does the validation.

        Usage::

            invoice = await client.prompt_model(
                PromptInput.from_prompt("Extract the invoice: ...", Invoice),
                max_retries=2,
            )
        """
        result = await self.execute_model(prompt, **kwargs)
        return result.data


def create_structured_client(
    temperature: float = 0.1,
    *,
    disable_json_fixer: bool = False,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
) -> StructuredClient:
    """StructuredClient wired to the environment-configured backends."""
    return StructuredClient(
        get_backend(temperature=temperature),
        get_fallback_backend(temperature=temperature),
        disable_json_fixer=disable_json_fixer,
        backoff_base=backoff_base,
    )


def semantic_check(check: Callable[[Any], tuple[bool, str]]) -> Callable[[Any, RetryResponseInfo], Any]:
    """Turn a ``model -> (is_valid, error_msg)`` check into a validate hook.

    A failed check becomes a RetryableError so the model gets another try
    with the error message as feedback.
    """

    def hook(data: Any, info: RetryResponseInfo) -> Any:
        is_valid, error = check(data)
        if not is_valid:
            log.warning(logger, MODULE, "semantic_failed", "Semantic validation failed",
                        attempt=info.attempt_number + 1, error=error)
            raise RetryableError(
                SEMANTIC_VALIDATION_FEEDBACK.format(details=error),
                "CUSTOM_ERROR",
                details={"semantic_error": error},
            )
        return data

    return hook


async def invoke_llm(
    system_prompt: str,
    user_prompt: str,
    schema: Type[T],
    *,
    client: Optional[StructuredClient] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    semantic_validator: Optional[Callable[[T], tuple[bool, str]]] = None,
    activity_name: str = "invoke",
    **kwargs: Any,
) -> T:
    """Invoke the LLM and return validated, typed output.

    Args:
        system_prompt: System message content
        user_prompt: User message content
        schema: Pydantic model class to validate against
        client: Client to use. Defaults to one built from the environment.
        max_retries: Retries after the first attempt
        semantic_validator: Optional function (model) -> (is_valid, error_msg)
        activity_name: Name for logging context
        **kwargs: Other options and backend params (temperature, model, ...)

    Returns:
        Validated instance of the schema type

    Raises:
        RetryExhaustedError: If all attempts fail
        FatalLLMError: On a non-recoverable failure
    """
    client = client or create_structured_client()
    if semantic_validator is not None:
        kwargs["validate"] = semantic_check(semantic_validator)

    result = await client.execute_model(
        PromptInput.from_system_user(system_prompt, user_prompt, schema),
        max_retries=max_retries,
        **kwargs,
    )
    log.info(logger, MODULE, "invoke_done", f"LLM invocation successful for {activity_name}",
             attempts=result.attempts, mode=result.mode, schema=schema.__name__)
    return result.data
