# adaptive_dread/logic/response_parsing.py

"""Helpers for turning generated text into structured data."""

import json
import logging
import math
import re
from typing import Any, Dict, Iterable, Optional

from adaptive_dread.errors import ParseFailure

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT = re.compile(r"(\{[\s\S]*\})")
_KEY_VALUE_LINE = re.compile(r"^\s*[-*]?\s*([A-Za-z_][\w ]*?)\s*[:=]\s*(-?\d+(?:\.\d+)?)\s*$")


def normalize_smart_quotes(text: str) -> str:
    return (
        text.replace("“", '"')
        .replace("”", '"')
        .replace("‘", "'")
        .replace("’", "'")
    )


def parse_json_object(raw_text: str) -> Dict[str, Any]:
    """
    Extract the first JSON object from an LLM response. Tries code fences,
    a direct parse, then the outermost ``{...}`` block.
    Raises ParseFailure if none of those produce an object.
    """
    if not raw_text or not isinstance(raw_text, str):
        raise ParseFailure("empty response", raw_text=raw_text or "")

    text = normalize_smart_quotes(raw_text.strip())
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
        match = _OBJECT.search(text)
        if match:
            try:
                parsed = json.loads(match.group(1))
            except json.JSONDecodeError:
                parsed = None

    if not isinstance(parsed, dict):
        raise ParseFailure("no JSON object in response", raw_text=raw_text)
    return parsed


def _key_value_lines(raw_text: str) -> Dict[str, float]:
    values: Dict[str, float] = {}
    for line in raw_text.splitlines():
        match = _KEY_VALUE_LINE.match(line)
        if match:
            values[match.group(1).strip().lower().replace(" ", "_")] = float(match.group(2))
    return values


def parse_score_map(
    raw_text: str,
    allowed_keys: Optional[Iterable[str]] = None,
    *,
    clamp: bool = True,
) -> Dict[str, float]:
    """
    Parse ``{"metric": 0.7, ...}`` or ``metric: 0.7`` lines into floats.
    Unknown keys are dropped when ``allowed_keys`` is given. Raises ParseFailure
    when nothing numeric survives.
    """
    try:
        candidate: Dict[str, Any] = parse_json_object(raw_text)
    except ParseFailure:
        candidate = _key_value_lines(raw_text or "")

    allowed = set(allowed_keys) if allowed_keys is not None else None
    scores: Dict[str, float] = {}
    for key, value in candidate.items():
        name = str(key).strip().lower().replace(" ", "_")
        if allowed is not None and name not in allowed:
            continue
        if isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(number):
            continue
        scores[name] = max(0.0, min(1.0, number)) if clamp else number

    if not scores:
        raise ParseFailure("no numeric scores in response", raw_text=raw_text or "")
    return scores
