"""Prompts for structured (JSON) output.

Three kinds of text are sent to the backend by the engine itself, on top of
whatever the caller wrote:

### 1. SCHEMA FOOTER
Appended to the system message of every JSON-mode call. It tells the model
what shape to produce. ``response_format={"type": "json_object"}`` helps
with syntax on backends that support it, but only the footer carries the
actual schema.

### 2. ERROR FEEDBACK
When an attempt fails in a way the model can fix, the failure is replayed as
the next user turn. The model sees its own bad reply (as the assistant turn)
followed by one of these messages. The ``Error Type`` line is deliberately
machine-looking so the model does not confuse it with user content.

### 3. FIXER
A standalone, out-of-conversation call used once per failure to repair a
reply that is almost right (a missing brace, a number sent as a string).
It must answer with the corrected JSON or the literal ``CANNOT_FIX``.

Templates use {placeholders} filled in with ``str.format``. Literal braces
do not appear in any template.
"""


# =============================================================================
# SCHEMA FOOTER
# =============================================================================

JSON_SCHEMA_FOOTER = """
Your response MUST be a single JSON entity (object or array) that strictly adheres to the following JSON schema.
Do NOT include any other text, explanations, or markdown formatting (like ```json) before or after the JSON entity.

JSON schema:
{schema_json}"""


# =============================================================================
# DEFAULT INSTRUCTIONS FOR TYPED PROMPTS
# =============================================================================

SCHEMA_ONLY_INSTRUCTION = "Generate a valid JSON object based on the schema."
SCHEMA_ONLY_PAYLOAD = "Generate the data."
PROMPT_ONLY_INSTRUCTION = (
    "You are a helpful assistant that outputs JSON matching the provided schema."
)


# =============================================================================
# ERROR FEEDBACK
# =============================================================================

JSON_PARSE_FEEDBACK = """Your previous response resulted in an error.
Error Type: JSON_PARSE_ERROR
Error Details: {details}
The response provided was not valid JSON. Please correct it."""

SCHEMA_VALIDATION_FEEDBACK = """Your previous response resulted in an error.
Error Type: SCHEMA_VALIDATION_ERROR
Error Details: {details}
The response was valid JSON but did not conform to the required schema. Please review the errors and the schema to provide a corrected response."""

SEMANTIC_VALIDATION_FEEDBACK = """Your previous response resulted in an error.
Error Type: SEMANTIC_VALIDATION_ERROR
Error Details: {details}
The response matched the schema but its content is not acceptable. Please correct it."""


# =============================================================================
# FIXER
# =============================================================================

CANNOT_FIX = "CANNOT_FIX"

FIXER_SYSTEM = "You are an expert at fixing malformed JSON data to match a specific schema."

FIXER_USER = """
An attempt to generate a JSON object resulted in the following output, which is either not valid JSON or does not conform to the required schema.

Your task is to act as a JSON fixer. Analyze the provided "BROKEN RESPONSE" and correct it to match the "REQUIRED JSON SCHEMA".

- If the broken response contains all the necessary information to create a valid JSON object according to the schema, please provide the corrected, valid JSON object.
- If the broken response is missing essential information, or is too garbled to be fixed, please respond with the exact string: "CANNOT_FIX".
- Your response must be ONLY the corrected JSON object or the string "CANNOT_FIX". Do not include any other text, explanations, or markdown formatting.

REQUIRED JSON SCHEMA:
{schema_json}

ERROR DETAILS:
{error_details}

BROKEN RESPONSE:
{broken_response}
"""

# Prefixes for the ERROR DETAILS block
PARSE_ERROR_PREFIX = "JSON Parse Error: "
VALIDATION_ERROR_PREFIX = "Schema Validation Error: "
