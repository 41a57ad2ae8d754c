from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.search(text or "")
    if match:
        return match.group(1).strip()
    return (text or "").strip()


def parse_json_lenient(text: str) -> Any:
    """Parse model output as JSON, tolerating a markdown fence around it.

    Raises ``ValueError`` when nothing parseable is found.
    """
    t = strip_code_fence(text)
    try:
        return json.loads(t)
    except ValueError:
        pass
    # Fall back to the outermost array/object in the text
    for opener, closer in (("[", "]"), ("{", "}")):
        start = t.find(opener)
        end = t.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(t[start : end + 1])
            except ValueError:
                continue
    raise ValueError("no JSON found in model output")
