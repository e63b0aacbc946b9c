"""Tolerant JSON parsing of LLM responses.

Models asked for JSON still like to wrap it in markdown code blocks, and
reasoning models prefix their answer with <think> blocks. This module strips
those wrappers and parses what is left. It never calls the backend; the
one-shot repair lives in repair.py.

Parse failures surface as ``json.JSONDecodeError`` so the repairer can tell
"fixable syntax problem" apart from anything else. An empty reply is its own
error (``JSONExtractionError``) and is never sent to the fixer.
"""

import json
import re
from typing import Any, Optional

from resilient_llm.llm.errors import JSONExtractionError
from resilient_llm.utils.logging import log, get_logger

MODULE = "llm.parser"
logger = get_logger()

EMPTY_RESPONSE_MESSAGE = "LLM returned an empty string."

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
_FENCE_RE = re.compile(r"^```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^```[\w-]*[ \t]*\n?")


def strip_think_tags(raw: str) -> tuple[str, Optional[str]]:
    """Strip a leading <think>...</think> block from reasoning model output.

    Returns:
        Tuple of (content_after_think, thinking_content). When there are no
        tags, returns the original text and None.
    """
    think_match = _THINK_RE.search(raw)
    if think_match and not raw[:think_match.start()].strip():
        thinking = think_match.group(1)
        after = raw[think_match.end():].strip()
        return after, thinking
    return raw, None


def strip_code_fence(text: str) -> str:
    """Remove a markdown code fence the text starts with.

    Handles ```json ... ```, bare ``` ... ```, and a fence the model opened
    but never closed. Text that does not start with a fence is returned as-is.
    """
    text = text.strip()
    if not text.startswith("```"):
        return text

    fenced = _FENCE_RE.match(text)
    if fenced:
        return fenced.group(1).strip()

    # Opened but never closed
    return _OPEN_FENCE_RE.sub("", text, count=1).strip()


def clean_response(raw: str) -> str:
    """Trim, drop <think> blocks and strip a leading code fence."""
    text, thinking = strip_think_tags(raw.strip())
    if thinking is not None:
        log.debug(logger, MODULE, "stripped_think", "Stripped <think> block from response",
                  thinking_length=len(thinking))
    return strip_code_fence(text)


def parse_json(raw: str) -> Any:
    """Parse an LLM response as JSON.

    Already-clean JSON parses to the same value ``json.loads`` would give.

    Args:
        raw: Raw LLM output string

    Returns:
        Parsed JSON (any JSON value)

    Raises:
        JSONExtractionError: If the response is empty after cleanup.
        json.JSONDecodeError: If the cleaned text is not valid JSON.
    """
    text = clean_response(raw or "")
    if text == "":
        raise JSONExtractionError(EMPTY_RESPONSE_MESSAGE, raw_output=raw or "")
    return json.loads(text)


def to_pretty_json(data: Any) -> str:
    """Serialise data the way it is shown back to the model (indent=2)."""
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)
