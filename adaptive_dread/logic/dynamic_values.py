# adaptive_dread/logic/dynamic_values.py

"""
Typed values for the state store's dynamic variables and event metadata.

A DynamicValue is one of four kinds: number, string, bool or blob. Anything
else is refused at the boundary, which keeps persistence and equality
well-defined without reflection.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Union

from adaptive_dread.errors import StateCorruption

Scalar = Union[float, int, str, bool, bytes]


class ValueKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOL = "bool"
    BLOB = "blob"


@dataclass(frozen=True)
class DynamicValue:
    kind: ValueKind
    value: Scalar

    @classmethod
    def from_python(cls, value: Any) -> "DynamicValue":
        if isinstance(value, DynamicValue):
            return value
        # bool before number: bool is an int subclass
        if isinstance(value, bool):
            return cls(ValueKind.BOOL, value)
        if isinstance(value, (int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                raise TypeError(f"non-finite number {value!r} cannot be stored")
            return cls(ValueKind.NUMBER, value)
        if isinstance(value, str):
            return cls(ValueKind.STRING, value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls(ValueKind.BLOB, bytes(value))
        raise TypeError(f"unsupported dynamic value type: {type(value).__name__}")

    def as_python(self) -> Scalar:
        return self.value

    def to_json(self) -> Dict[str, Any]:
        if self.kind is ValueKind.BLOB:
            return {"kind": self.kind.value, "value": base64.b64encode(self.value).decode("ascii")}
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_json(cls, payload: Any) -> "DynamicValue":
        """Rebuild a value from ``to_json`` output; raises StateCorruption on bad input."""
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise StateCorruption("dynamic_value", f"not JSON: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise StateCorruption("dynamic_value", f"expected an object, got {type(payload).__name__}")

        try:
            kind = ValueKind(payload.get("kind"))
        except ValueError as exc:
            raise StateCorruption("dynamic_value", f"unknown kind {payload.get('kind')!r}") from exc

        raw = payload.get("value")
        if kind is ValueKind.BLOB:
            if not isinstance(raw, str):
                raise StateCorruption("dynamic_value", "blob payload must be base64 text")
            try:
                return cls(kind, base64.b64decode(raw.encode("ascii"), validate=True))
            except (binascii.Error, UnicodeEncodeError) as exc:
                raise StateCorruption("dynamic_value", f"bad base64: {exc}") from exc
        if kind is ValueKind.BOOL and isinstance(raw, bool):
            return cls(kind, raw)
        if kind is ValueKind.NUMBER and isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return cls(kind, raw)
        if kind is ValueKind.STRING and isinstance(raw, str):
            return cls(kind, raw)
        raise StateCorruption("dynamic_value", f"{kind.value} value has wrong type {type(raw).__name__}")


def coerce_mapping(values: Mapping[str, Any]) -> Dict[str, DynamicValue]:
    """Convert a plain mapping; raises TypeError on the first unsupported value."""
    return {str(key): DynamicValue.from_python(value) for key, value in (values or {}).items()}
