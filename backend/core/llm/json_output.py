"""JSON extraction from free-form model output."""

import json
from typing import Dict, Optional


def extract_json_object(text: str) -> Optional[Dict]:
    """Extract the outermost JSON object from LLM text output.

    Handles markdown code fences and leading/trailing prose around the object.
    Returns None when no object can be parsed.
    """
    if not text:
        return None

    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()

    try:
        result = json.loads(cleaned)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    if start < 0:
        return None

    # Walk forward tracking nesting depth, ignoring braces inside strings
    depth = 0
    in_string = False
    escape_next = False
    end = -1
    for i in range(start, len(cleaned)):
        c = cleaned[i]
        if escape_next:
            escape_next = False
            continue
        if c == "\\":
            escape_next = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                end = i + 1
                break

    if end > start:
        try:
            result = json.loads(cleaned[start:end])
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass
    return None
