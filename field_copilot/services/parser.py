"""
Extraction of the structured answer from raw model output
"""
import json
import re
from typing import Any, Dict, Optional

from field_copilot.exceptions import ParseError
from field_copilot.models.chat import ParsedResponse

_OPENING_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*[ \t]*\n?")
_CLOSING_FENCE = re.compile(r"\n?```\s*$")

_decoder = json.JSONDecoder()


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, if any"""
    text = text.strip()
    if text.startswith("```"):
        text = _OPENING_FENCE.sub("", text, count=1)
        text = _CLOSING_FENCE.sub("", text, count=1)
    return text.strip()


def find_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first JSON object embedded in ``text``"""
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        value = None
    if isinstance(value, dict):
        return value

    position = text.find("{")
    while position != -1:
        try:
            value, _ = _decoder.raw_decode(text, position)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        position = text.find("{", position + 1)
    return None


def parse_response(content: str) -> ParsedResponse:
    """
    Parse model output into a ParsedResponse.

    Raises ParseError when no JSON object can be found or when the object
    has no string ``answer``.
    """
    payload = find_json_object(strip_code_fence(content or ""))
    if payload is None:
        raise ParseError("No JSON object found in model output")

    answer = payload.get("answer")
    if not isinstance(answer, str):
        raise ParseError("Model output is missing a string 'answer' field")

    citations = payload.get("citations")
    follow_ups = payload.get("follow_ups", payload.get("followUps"))

    return ParsedResponse(
        answer=answer,
        citations=[item for item in citations if isinstance(item, dict)] if isinstance(citations, list) else [],
        follow_ups=[item for item in follow_ups if isinstance(item, str)] if isinstance(follow_ups, list) else [],
    )
