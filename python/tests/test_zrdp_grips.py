import math
from unittest.mock import MagicMock

from zrdp.grips import (
    GripKind,
    OpaquePlaceholder,
    RemoteSymbol,
    classify_grip,
    decode_grip,
    is_long_string,
    is_placeholder,
)


def test_primitives_pass_through():
    for value in (2, "text", True, None, 1.5):
        assert decode_grip(value) == value
        assert classify_grip(value) is GripKind.PRIMITIVE


def test_special_values():
    assert decode_grip({"type": "undefined"}) is None
    assert decode_grip({"type": "null"}) is None
    assert math.isnan(decode_grip({"type": "NaN"}))
    assert decode_grip({"type": "Infinity"}) == math.inf
    assert decode_grip({"type": "-Infinity"}) == -math.inf
    negative_zero = decode_grip({"type": "-0"})
    assert negative_zero == 0 and math.copysign(1.0, negative_zero) == -1.0
    assert decode_grip({"type": "BigInt", "text": "12345678901234567890"}) == 12345678901234567890


def test_long_string_fetches_remainder():
    fetch = MagicMock(return_value="abcde")
    grip = {"type": "longString", "actor": "s1", "length": 5, "initial": "ab"}

    assert decode_grip(grip, fetch) == "abcde"
    fetch.assert_called_once_with("s1", 5)


def test_long_string_without_fetcher_returns_grip():
    grip = {"type": "longString", "actor": "s1", "length": 5, "initial": "ab"}
    assert decode_grip(grip) is grip
    assert is_long_string(decode_grip(grip))


def test_complete_long_string_needs_no_fetch():
    fetch = MagicMock()
    grip = {"type": "longString", "actor": "s1", "length": 2, "initial": "ab"}
    assert decode_grip(grip, fetch) == "ab"
    fetch.assert_not_called()


def test_array_preview_decodes_items():
    grip = {
        "type": "object",
        "class": "Array",
        "actor": "obj1",
        "preview": {"kind": "ArrayLike", "length": 3, "items": [1, {"type": "undefined"}, "x"]},
    }
    assert classify_grip(grip) is GripKind.ARRAY
    assert decode_grip(grip) == [1, None, "x"]


def test_object_preview_decodes_own_properties():
    grip = {
        "type": "object",
        "class": "Object",
        "actor": "obj2",
        "preview": {
            "kind": "Object",
            "ownProperties": {
                "title": {"value": "Paper"},
                "tags": {"value": {"type": "object", "class": "Array", "preview": {"items": ["a"]}}},
            },
        },
    }
    assert decode_grip(grip) == {"title": "Paper", "tags": ["a"]}


def test_nested_long_strings_use_fetcher():
    fetch = MagicMock(return_value="full text")
    grip = {
        "type": "object",
        "class": "Object",
        "preview": {
            "ownProperties": {
                "body": {"value": {"type": "longString", "actor": "s9", "length": 9, "initial": "full"}}
            }
        },
    }
    assert decode_grip(grip, fetch) == {"body": "full text"}


def test_object_without_preview_becomes_placeholder():
    value = decode_grip({"type": "object", "class": "Window", "actor": "obj3"})
    assert value == "[Window]"
    assert isinstance(value, OpaquePlaceholder)
    assert value.class_name == "Window"
    assert is_placeholder(value)
    assert not is_placeholder("[Window]")


def test_preview_without_properties_is_opaque():
    grip = {"type": "object", "class": "Function", "preview": {"kind": "Function"}}
    assert classify_grip(grip) is GripKind.OPAQUE
    assert decode_grip(grip) == "[Function]"


def test_symbols_are_interned():
    first = decode_grip({"type": "symbol", "name": "Symbol.iterator"})
    second = decode_grip({"type": "symbol", "name": "Symbol.iterator"})
    other = decode_grip({"type": "symbol", "name": "other"})
    assert first is second
    assert first is RemoteSymbol.for_name("Symbol.iterator")
    assert first is not other


def test_unknown_tagged_dict_is_returned_unchanged():
    grip = {"type": "mystery", "value": 1}
    assert classify_grip(grip) is GripKind.UNKNOWN
    assert decode_grip(grip) is grip
