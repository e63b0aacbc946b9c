"""One-shot repair of structured output.

Two tiers sit between a raw reply and a conversational retry:

  1. TOLERANT PARSE (parser.py): trim, strip fences, json.loads.
  2. FIXER: one standalone backend call that gets the schema, the error and
     the broken reply, and must answer with corrected JSON or CANNOT_FIX.

The fixer is used at most once per failure and never loops. It runs outside
the visible conversation and does not count as an attempt. If it can't help
(sentinel, unparseable answer, backend error) the *original* error is raised
so the retry loop feeds the model the real problem, not fixer noise.

The same fixer backs schema validation: when parsed data fails the
validator, the pretty-printed data is sent as the broken response and the
fixer's answer is validated once more.
"""

import json
from typing import Any, Optional

from resilient_llm.llm.errors import JSONExtractionError, SchemaValidationError
from resilient_llm.llm.parser import clean_response, parse_json, to_pretty_json
from resilient_llm.llm.protocols import BackendInvoker, completion_to_dict, first_message, message_text
from resilient_llm.llm.validators import SchemaValidator
from resilient_llm.prompts.structured_output import (
    CANNOT_FIX,
    FIXER_SYSTEM,
    FIXER_USER,
    PARSE_ERROR_PREFIX,
    VALIDATION_ERROR_PREFIX,
)
from resilient_llm.schemas.options import RetryOptions
from resilient_llm.utils.logging import log, get_logger

MODULE = "llm.repair"
logger = get_logger()

JSON_OBJECT_FORMAT = {"type": "json_object"}


class JsonRepairer:
    """Parse-or-fix and validate-or-fix around a single backend.

    Args:
        backend: Backend the fixer calls. Always the main backend, never
            the fallback.
        disable_fixer: Client-wide default; per-call ``disable_json_fixer``
            overrides it.
    """

    def __init__(self, backend: BackendInvoker, *, disable_fixer: bool = False):
        self.backend = backend
        self.disable_fixer = disable_fixer

    def _fixer_disabled(self, options: RetryOptions) -> bool:
        return options.fixer_disabled(self.disable_fixer)

    async def try_to_fix(
        self,
        broken_response: str,
        schema_json: str,
        error_details: str,
        options: RetryOptions,
    ) -> Optional[str]:
        """Ask the backend to repair a broken response.

        Returns:
            The fixer's answer, or None for CANNOT_FIX, an empty answer, or a
            failed fixer call.
        """
        messages = [
            {"role": "system", "content": FIXER_SYSTEM},
            {"role": "user", "content": FIXER_USER.format(
                schema_json=schema_json,
                error_details=error_details,
                broken_response=broken_response,
            )},
        ]

        params = dict(options.params)
        params.pop("response_format", None)
        if options.use_response_format:
            params["response_format"] = dict(JSON_OBJECT_FORMAT)

        log.info(logger, MODULE, "fixer_start", "Calling JSON fixer",
                 error=error_details[:200], broken_length=len(broken_response))
        try:
            completion = completion_to_dict(await self.backend(messages, **params))
        except Exception as e:
            log.warning(logger, MODULE, "fixer_failed", "Fixer call raised; keeping original error",
                        error=str(e), error_type=type(e).__name__)
            return None

        fixed = message_text(first_message(completion))
        if not fixed or fixed.strip() == CANNOT_FIX:
            log.info(logger, MODULE, "fixer_skipped", "Fixer could not repair the response",
                     sentinel=bool(fixed))
            return None
        return fixed

    async def parse_or_fix(self, raw: str, schema_json: str, options: RetryOptions) -> Any:
        """Parse a reply, falling back to one fixer call on a syntax error.

        Raises:
            JSONExtractionError: Empty reply. Never sent to the fixer.
            json.JSONDecodeError: The original parse error, when the fixer is
                disabled or could not produce parseable JSON.
        """
        try:
            return parse_json(raw)
        except json.JSONDecodeError as e:
            parse_error = e

        if self._fixer_disabled(options):
            raise parse_error

        fixed = await self.try_to_fix(
            clean_response(raw),
            schema_json,
            f"{PARSE_ERROR_PREFIX}{parse_error}",
            options,
        )
        if fixed is not None:
            try:
                data = parse_json(fixed)
            except (JSONExtractionError, json.JSONDecodeError) as e:
                log.warning(logger, MODULE, "fixer_unparseable",
                            "Fixer output is not valid JSON either", error=str(e))
            else:
                log.info(logger, MODULE, "fixer_done", "Fixer repaired JSON syntax")
                return data

        raise parse_error

    async def validate_or_fix(
        self,
        data: Any,
        validator: SchemaValidator,
        schema_json: str,
        options: RetryOptions,
    ) -> Any:
        """Validate parsed data, falling back to one fixer call.

        ``before_validation`` runs before every validation, including the one
        on the fixer's output. Only ``SchemaValidationError`` is repaired;
        anything else raised by the hook or the validator propagates as-is.
        In the repair pass every failure collapses to the original error.

        Raises:
            SchemaValidationError: The original validation error.
        """
        prepared = data
        try:
            if options.before_validation is not None:
                prepared = options.before_validation(prepared)
            return validator.validate(prepared)
        except SchemaValidationError as e:
            validation_error = e

        if self._fixer_disabled(options):
            raise validation_error

        fixed = await self.try_to_fix(
            to_pretty_json(prepared),
            schema_json,
            f"{VALIDATION_ERROR_PREFIX}{validation_error.message}",
            options,
        )
        if fixed is not None:
            try:
                fixed_data = parse_json(fixed)
                if options.before_validation is not None:
                    fixed_data = options.before_validation(fixed_data)
                validated = validator.validate(fixed_data)
            except Exception as e:
                log.warning(logger, MODULE, "fixer_invalid",
                            "Fixer output failed validation; keeping original error",
                            error=str(e)[:200], error_type=type(e).__name__)
            else:
                log.info(logger, MODULE, "fixer_done", "Fixer repaired schema violations")
                return validated

        raise validation_error
