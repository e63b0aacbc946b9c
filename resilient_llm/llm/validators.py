"""Schema validators for parsed LLM output.

A validator is anything with ``validate(data) -> data`` that raises
``SchemaValidationError`` when the data does not fit. The engine only ever
talks to that contract, so which validation technology sits behind it is the
caller's choice:

  JsonSchemaValidator → a plain JSON Schema dict, checked with ``jsonschema``
  PydanticValidator   → a pydantic model (or any type via TypeAdapter);
                        returns the model instance, not the dict
  CallableValidator   → any ``data -> data`` function

Only ``SchemaValidationError`` counts as "the model got the shape wrong".
Anything else a validator raises (a KeyError in a custom check, a failing
lookup) is a bug, not bad output, and the retry loop treats it as fatal.

Validators are built per call or per client. Nothing here is cached at
module level, so concurrent calls never share compiled state.
"""

import json
from typing import Any, Callable, Optional, Protocol, Type, Union, runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.validators import validator_for
from pydantic import BaseModel, TypeAdapter, ValidationError

from resilient_llm.llm.errors import SchemaValidationError
from resilient_llm.utils.logging import log, get_logger

MODULE = "llm.validators"
logger = get_logger()


@runtime_checkable
class SchemaValidator(Protocol):
    """Capability: turn parsed data into validated data or raise."""

    def validate(self, data: Any) -> Any:
        ...


class JsonSchemaValidator:
    """Structural validation against a JSON Schema dict.

    The validator class is picked from the schema's ``$schema`` keyword,
    defaulting to Draft 2020-12. An invalid schema raises
    ``jsonschema.SchemaError`` at construction, which is a caller bug.
    """

    def __init__(self, schema: dict):
        self.schema = schema
        cls = validator_for(schema, default=Draft202012Validator)
        cls.check_schema(schema)
        self._validator = cls(schema)

    def validate(self, data: Any) -> Any:
        errors = sorted(
            self._validator.iter_errors(data),
            key=lambda err: [str(p) for p in err.absolute_path],
        )
        if not errors:
            return data

        details = [
            {
                "path": "/" + "/".join(str(p) for p in err.absolute_path),
                "message": err.message,
                "validator": err.validator,
            }
            for err in errors
        ]
        summary = ", ".join(
            f"{d['path'] if d['path'] != '/' else ''} {d['message']}".strip() for d in details
        )
        log.debug(logger, MODULE, "jsonschema_failed", "JSON Schema validation failed",
                  error_count=len(details))
        raise SchemaValidationError(f"JSON Schema Validation Error: {summary}", errors=details)

    def json_schema(self) -> dict:
        return self.schema


class PydanticValidator:
    """Validation through a pydantic model or any type pydantic understands.

    ``pydantic.ValidationError`` becomes ``SchemaValidationError`` carrying the
    error list; the message is that list as indented JSON, which is what the
    model gets to read.
    """

    def __init__(self, schema: Union[Type[BaseModel], Any]):
        self.schema = schema
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            self._adapter = None
        else:
            self._adapter = TypeAdapter(schema)

    def validate(self, data: Any) -> Any:
        try:
            if self._adapter is None:
                return self.schema.model_validate(data)
            return self._adapter.validate_python(data)
        except ValidationError as e:
            errors = e.errors(include_url=False)
            message = json.dumps(errors, indent=2, default=str)
            raise SchemaValidationError(message, errors=errors) from e

    def json_schema(self) -> dict:
        if self._adapter is None:
            return self.schema.model_json_schema()
        return self._adapter.json_schema()


class CallableValidator:
    """Adapts a bare ``data -> data`` function to the validator contract."""

    def __init__(self, fn: Callable[[Any], Any]):
        self.fn = fn

    def validate(self, data: Any) -> Any:
        return self.fn(data)


def is_pydantic_model(obj: Any) -> bool:
    return isinstance(obj, type) and issubclass(obj, BaseModel)


def as_validator(obj: Any, schema: Optional[dict] = None) -> SchemaValidator:
    """Resolve whatever the caller passed into a validator.

    Accepts an existing validator, a pydantic model class, a JSON Schema dict
    or a plain function. ``None`` falls back to ``schema``.
    """
    if obj is None:
        if schema is None:
            raise ValueError("Either a validator or a JSON schema is required")
        return JsonSchemaValidator(schema)
    if isinstance(obj, SchemaValidator) and not isinstance(obj, type):
        return obj
    if is_pydantic_model(obj):
        return PydanticValidator(obj)
    if isinstance(obj, dict):
        return JsonSchemaValidator(obj)
    if callable(obj):
        return CallableValidator(obj)
    raise TypeError(f"Cannot use {type(obj).__name__} as a schema validator")
