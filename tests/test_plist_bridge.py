"""
Unit tests for plistcodec - Typed bridge

This test file covers conversion between Value trees and dataclasses,
enums, containers, numpy scalars and arrays, including optional fields,
numeric range checks and error paths.
"""

import datetime
import enum
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pytest

# Add the lib directory to the path to import plistcodec
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))) + "/lib")
import plistcodec
from plistcodec import (Array, Boolean, Data, Date, Dictionary, Integer, Real, String, Uid, PlistFormat,
                        NumericRangeError, TypeMismatchError, UnrepresentableValueError,
                        from_value, to_python, to_value)


class Mood(enum.Enum):
    HAPPY = 1
    GRUMPY = 2


@dataclass
class Level:
    id: int
    name: str
    stars: np.uint8
    scores: List[float]


@dataclass
class Save:
    player: str
    levels: List[Level]
    mood: Mood
    settings: Dict[str, bool]
    best_time: Optional[float] = None
    coins: int = 0
    friends: List[str] = field(default_factory=list)


@dataclass
class Profile:
    name: str
    nickname: Optional[str]


@dataclass
class Counter:
    value: np.int64


@dataclass
class Node:
    name: str
    child: Optional["Node"] = None


def make_save():
    return Save(
        player="robtop",
        levels=[Level(1, "Stereo Madness", np.uint8(1), [1.0, 2.5]),
                Level(2, "Back On Track", np.uint8(2), [])],
        mood=Mood.HAPPY,
        settings={"music": True, "sfx": False},
    )


@pytest.mark.parametrize("fmt", [PlistFormat.BINARY, PlistFormat.XML])
def test_typed_round_trip(fmt):
    save = make_save()
    data = plistcodec.dumps_typed(save, fmt=fmt)
    assert plistcodec.loads_typed(data, Save) == save


def test_none_fields_are_omitted():
    value = to_value(make_save())
    assert "best_time" not in value
    assert value["coins"] == Integer(0)
    assert value["mood"] == String("HAPPY")
    assert value["levels"][0]["stars"] == Integer(1)
    assert value["levels"][0]["scores"] == Array([Real(1.0), Real(2.5)])

    value["best_time"] = Real(12.5)
    assert from_value(value, Save).best_time == 12.5


def test_missing_keys():
    # Optional without a default becomes None, unknown keys are ignored
    profile = from_value(Dictionary({"name": String("a"), "extra": Integer(1)}), Profile)
    assert profile == Profile("a", None)

    # Defaults fill missing fields
    value = to_value(make_save())
    value.remove("coins")
    value.remove("friends")
    save = from_value(value, Save)
    assert save.coins == 0
    assert save.friends == []

    with pytest.raises(TypeMismatchError, match="missing field 'name'"):
        from_value(Dictionary(), Profile)


def test_mismatch_reports_path():
    value = to_value(make_save())
    value["levels"][1]["id"] = String("two")
    with pytest.raises(TypeMismatchError, match=r"\$\.levels\[1\]\.id: expected integer, found string"):
        from_value(value, Save)


def test_signed_64_bit_target_range():
    with pytest.raises(NumericRangeError):
        from_value(Dictionary({"value": Integer(2**63)}), Counter)

    counter = from_value(Dictionary({"value": Integer(-2**63)}), Counter)
    assert counter.value == np.int64(-2**63)
    assert isinstance(counter.value, np.int64)

    # Python int holds the whole range
    assert from_value(Integer(2**63), int) == 2**63


@pytest.mark.parametrize("shape, number", [
    (np.int8, 128),
    (np.int8, -129),
    (np.uint8, -1),
    (np.uint16, 65536),
    (np.int32, 2**31),
    (np.uint64, -1),
])
def test_numpy_integer_ranges(shape, number):
    with pytest.raises(NumericRangeError):
        from_value(Integer(number), shape)


def test_numpy_scalars():
    assert from_value(Integer(255), np.uint8) == 255
    assert isinstance(from_value(Integer(255), np.uint8), np.uint8)
    assert isinstance(from_value(Real(0.5), np.float32), np.float32)
    assert np.isinf(from_value(Real(float("inf")), np.float32))

    with pytest.raises(NumericRangeError):
        from_value(Real(1e300), np.float32)

    assert to_value(np.int16(-3)) == Integer(-3)
    assert to_value(np.float32(0.5)) == Real(0.5)
    assert to_value(np.bool_(True)) == Boolean(True)


def test_float_and_int_targets():
    widened = from_value(Integer(3), float)
    assert widened == 3.0
    assert isinstance(widened, float)

    with pytest.raises(TypeMismatchError):
        from_value(Real(3.0), int)
    with pytest.raises(TypeMismatchError):
        from_value(Boolean(True), int)
    with pytest.raises(TypeMismatchError):
        from_value(Integer(1), bool)


def test_enum():
    assert to_value(Mood.GRUMPY) == String("GRUMPY")
    assert from_value(String("GRUMPY"), Mood) is Mood.GRUMPY
    # Older single-key dictionary encoding
    assert from_value(Dictionary({"HAPPY": String("")}), Mood) is Mood.HAPPY

    with pytest.raises(TypeMismatchError):
        from_value(String("SLEEPY"), Mood)
    with pytest.raises(TypeMismatchError):
        from_value(Integer(1), Mood)


def test_none_outside_optional():
    with pytest.raises(UnrepresentableValueError):
        to_value(None)
    with pytest.raises(UnrepresentableValueError):
        to_value([1, None])

    # Mapping entries holding None are skipped
    assert to_value({"a": 1, "b": None}) == Dictionary({"a": Integer(1)})


def test_untyped_conversion():
    obj = {
        "int": 1,
        "float": 1.5,
        "bool": True,
        "str": "text",
        "bytes": b"\x00\x01",
        "list": [1, [2, 3]],
        "tuple": (4, 5),
        "when": datetime.datetime(2020, 1, 1, tzinfo=datetime.timezone.utc),
    }
    value = to_value(obj)
    assert value["bool"] == Boolean(True)
    assert value["bytes"] == Data(b"\x00\x01")
    assert value["tuple"] == Array([Integer(4), Integer(5)])
    assert isinstance(value["when"], Date)

    result = to_python(value)
    assert result["list"] == [1, [2, 3]]
    assert result["when"] == obj["when"]
    assert from_value(value) == result

    with pytest.raises(TypeMismatchError):
        to_value({1: "a"})
    with pytest.raises(TypeMismatchError):
        to_value(object())


def test_to_python_keeps_uid():
    result = to_python(Dictionary({"ref": Uid(3), "items": Array([Integer(1)])}))
    assert result == {"ref": Uid(3), "items": [1]}


def test_numpy_arrays():
    array = np.array([[1, 2], [3, 4]], dtype=np.int32)
    value = to_value(array)
    assert value == Array([Array([Integer(1), Integer(2)]), Array([Integer(3), Integer(4)])])
    np.testing.assert_array_equal(from_value(value, np.ndarray), array)

    with pytest.raises(TypeMismatchError):
        from_value(Integer(1), np.ndarray)


def test_ragged_numpy_array():
    ragged = Dictionary({"grid": Array([Array([Integer(1)]), Array([Integer(1), Integer(2)])])})
    with pytest.raises(TypeMismatchError, match=r"\$\.grid"):
        from_value(ragged, Dict[str, np.ndarray])


def test_shape_cache_is_bounded():
    from plistcodec.bridge import SHAPE_CACHE_SIZE, _cached_shape, shape_for

    assert shape_for(List[Level]) is shape_for(List[Level])
    for width in range(SHAPE_CACHE_SIZE + 10):
        shape_for(Tuple[(int,) * (width + 1)])
    assert _cached_shape.cache_info().currsize <= SHAPE_CACHE_SIZE


def test_sequences_and_tuples():
    value = Array([Integer(1), String("a")])
    assert from_value(value, Tuple[int, str]) == (1, "a")
    assert from_value(Array([Integer(1), Integer(2)]), Tuple[int, ...]) == (1, 2)
    assert from_value(Array([Integer(1), Integer(2)]), Sequence[int]) == [1, 2]

    with pytest.raises(TypeMismatchError):
        from_value(value, Tuple[int, str, str])
    with pytest.raises(TypeMismatchError, match=r"\$\[1\]"):
        from_value(value, List[int])


def test_value_passthrough():
    nested = Dictionary({"raw": Array([Uid(1)])})
    assert from_value(nested, Dictionary) is nested
    assert from_value(nested, Any) == {"raw": [Uid(1)]}

    with pytest.raises(TypeMismatchError):
        from_value(nested, Array)


def test_recursive_dataclass():
    node = Node("root", Node("leaf"))
    value = to_value(node)
    assert value == Dictionary({"name": String("root"), "child": Dictionary({"name": String("leaf")})})
    assert from_value(value, Node) == node


def test_unsupported_shapes():
    with pytest.raises(TypeMismatchError):
        from_value(Integer(1), Union[int, str])
    with pytest.raises(TypeMismatchError):
        from_value(Dictionary(), Dict[int, str])
