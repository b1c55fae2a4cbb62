"""Extraction of structured payloads from free-form tool output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator, Optional, Tuple

from .errors import OutputParseError, ProcessFailure

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n(.*?)\r?\n?```", re.DOTALL)
_decoder = json.JSONDecoder()


def _iter_fenced_blocks(text: str) -> Iterator[str]:
    for match in _FENCED_BLOCK.finditer(text):
        yield match.group(1)


def _scan_for_object(text: str) -> Optional[dict]:
    """Return the first complete JSON object embedded in ``text``."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> dict:
    """Locate and parse the JSON object carried by tool output.

    The whole text is tried first, then fenced ```json blocks in order, and
    finally an incremental scan that decodes from each opening brace until a
    complete object is found. Unrelated braces in narrative text are skipped
    because a candidate only counts when it decodes as a full object.

    Raises:
        OutputParseError: If no JSON object can be found.
    """
    stripped = text.strip()
    if not stripped:
        raise OutputParseError("No JSON object found in empty output", raw_output=text)

    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        value = None
    if isinstance(value, dict):
        return value

    for block in _iter_fenced_blocks(text):
        found = _scan_for_object(block)
        if found is not None:
            return found

    found = _scan_for_object(text)
    if found is not None:
        return found
    raise OutputParseError("No JSON object found in output", raw_output=text)


def _session_id_from(payload: dict) -> Optional[str]:
    session_id = payload.get("session_id") or payload.get("sessionId")
    return str(session_id) if session_id else None


def _is_result_envelope(payload: dict) -> bool:
    return payload.get("type") == "result" and "result" in payload


def parse_structured_output(text: str) -> Tuple[Any, Optional[str], Optional[float]]:
    """Parse structured tool output.

    Returns:
        Tuple of ``(payload, external_session_id, cost)``.

    Raises:
        OutputParseError: No JSON object in the output.
        ProcessFailure: The tool reported an error inside its result envelope.
    """
    payload = extract_json_object(text)
    if not _is_result_envelope(payload):
        return payload, _session_id_from(payload), None

    session_id = _session_id_from(payload)
    cost = payload.get("total_cost_usd", payload.get("cost_usd"))
    if payload.get("is_error"):
        reason = payload.get("result") or payload.get("subtype") or "unknown error"
        raise ProcessFailure(f"Tool reported an error: {reason}", raw_output=text)

    inner = payload["result"]
    if isinstance(inner, str):
        try:
            inner = extract_json_object(inner)
        except OutputParseError:
            logger.debug("Result envelope carries no JSON payload; keeping envelope")
            inner = payload
    return inner, session_id, cost
