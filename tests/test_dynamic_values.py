import pytest

from adaptive_dread.errors import StateCorruption
from adaptive_dread.logic.dynamic_values import DynamicValue, ValueKind, coerce_mapping


def test_bool_is_not_a_number():
    assert DynamicValue.from_python(True).kind is ValueKind.BOOL
    assert DynamicValue.from_python(3).kind is ValueKind.NUMBER


def test_blob_survives_json_encoding():
    value = DynamicValue.from_python(b"\x00\xffraw")
    encoded = value.to_json()

    assert encoded["kind"] == "blob"
    assert DynamicValue.from_json(encoded) == value


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), [1, 2], {"a": 1}, None, object()])
def test_unsupported_values_are_refused(bad):
    with pytest.raises(TypeError):
        DynamicValue.from_python(bad)


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        '["list"]',
        {"kind": "tensor", "value": 1},
        {"kind": "number", "value": "seven"},
        {"kind": "bool", "value": 1},
        {"kind": "blob", "value": "%%%"},
    ],
)
def test_corrupt_payloads_raise_state_corruption(payload):
    with pytest.raises(StateCorruption):
        DynamicValue.from_json(payload)


def test_coerce_mapping_keeps_equality_by_value():
    coerced = coerce_mapping({"visits": 2, "name": "attic"})

    assert coerced["visits"] == DynamicValue(ValueKind.NUMBER, 2)
    assert coerced["name"].as_python() == "attic"
