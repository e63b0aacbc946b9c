"""Per-call options for the retry entry points.

Every entry point accepts flat keyword arguments, the way ``invoke_llm`` does:

    await client.prompt_json(messages, schema, max_retries=2, temperature=0.2)

``RetryOptions.from_kwargs`` splits those into the options the engine itself
understands and the backend parameters it must pass through untouched
(model, temperature, max_tokens, timeout, ...).
"""

from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MAX_RETRIES = 3

# Keyword names consumed by the engine; everything else goes to the backend.
_ENGINE_KEYS = {
    "max_retries",
    "validate",
    "before_validation",
    "use_response_format",
    "disable_json_fixer",
}


class RetryOptions(BaseModel):
    """Options recognised by every retry entry point.

    Attributes:
        max_retries: Retries after the first attempt. 0 disables retrying.
        validate_response: Optional ``validate(data, info)`` hook, sync or
            async. Raising ``RetryableError`` asks for another attempt.
        before_validation: Optional ``data -> data`` transform applied to
            parsed JSON before schema validation.
        use_response_format: Send ``response_format={"type": "json_object"}``
            in JSON modes.
        disable_json_fixer: Skip the one-shot fixer call. ``None`` defers to
            the client's default.
        params: Backend parameters passed through unchanged.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    validate_response: Optional[Callable[..., Any]] = None
    before_validation: Optional[Callable[[Any], Any]] = None
    use_response_format: bool = True
    disable_json_fixer: Optional[bool] = None
    params: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_kwargs(cls, **kwargs: Any) -> "RetryOptions":
        """Build options from flat keyword arguments."""
        params = {k: v for k, v in kwargs.items() if k not in _ENGINE_KEYS}
        engine = {k: v for k, v in kwargs.items() if k in _ENGINE_KEYS and v is not None}
        if "validate" in engine:
            engine["validate_response"] = engine.pop("validate")
        return cls(params=params, **engine)

    def fixer_disabled(self, client_default: bool = False) -> bool:
        if self.disable_json_fixer is None:
            return client_default
        return self.disable_json_fixer

    def with_overrides(self, **changes: Any) -> "RetryOptions":
        """Return a copy with some fields replaced."""
        return self.model_copy(update=changes)
