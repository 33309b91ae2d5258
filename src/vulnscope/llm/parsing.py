from __future__ import annotations

import json
from typing import Any

import jsonschema

FENCE_OPEN = "```json"
FENCE_CLOSE = "```"


class ResponseParseError(ValueError):
    pass


def parse_fenced_json(text: str) -> Any:
    """Decode the first ```json fenced block in a model reply."""
    start = text.find(FENCE_OPEN)
    if start == -1:
        raise ResponseParseError("missing_json_fence")
    body_start = start + len(FENCE_OPEN)
    end = text.find(FENCE_CLOSE, body_start)
    if end == -1:
        raise ResponseParseError("unterminated_json_fence")
    try:
        return json.loads(text[body_start:end].strip())
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"invalid_json: {exc}") from exc


def validate_payload(schema: dict[str, Any], payload: Any) -> None:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise ResponseParseError(f"schema_violation: {exc.message}") from exc


def parse_reply(text: str, schema: dict[str, Any]) -> dict[str, Any]:
    payload = parse_fenced_json(text)
    validate_payload(schema, payload)
    return payload
