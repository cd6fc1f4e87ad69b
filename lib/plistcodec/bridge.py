"""
Typed bridge between plist values and ordinary Python objects.

``to_value(obj)`` turns a Python object into a Value tree and
``from_value(value, shape)`` turns a Value tree into an object of the
requested shape, where a shape is a type hint:

    @dataclass
    class Save:
        name: str
        levels: List[int]
        best_time: Optional[float] = None

    value = to_value(Save('level-1', [3, 1]))     # best_time is omitted
    save = from_value(value, Save)

Type hints are resolved into a small, closed set of Shape classes (record,
sequence, tuple, mapping, optional, enum, primitive, numpy scalar, numpy
array, Value passthrough, Any). Each shape knows how to serialize a host
value of its kind and how to deserialize a Value into one.

The plist format has no null. Optional fields and mapping entries holding
None are left out when serializing, and a missing key deserializes to None
(or to the dataclass default). None anywhere else cannot be serialized.
"""

import collections.abc
import dataclasses
import datetime
import enum
import types
import typing
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ._errors import NumericRangeError, TypeMismatchError, UnrepresentableValueError
from .value import Array, Boolean, Data, Date, Dictionary, Integer, Real, String, Uid, Value, rebuild

# Marker returned by Shape.serialize for an absent optional value
ABSENT = object()


class Shape:
    """Base class of host shapes."""

    name = 'any'

    def serialize(self, obj: Any) -> Value:
        raise NotImplementedError

    def deserialize(self, value: Value, path: str) -> Any:
        raise NotImplementedError

    def mismatch(self, value: Value, path: str) -> TypeMismatchError:
        return TypeMismatchError(f"{path}: expected {self.name}, found {value.kind}")


class AnyShape(Shape):
    """Serializes by runtime type and deserializes to native Python objects."""

    def serialize(self, obj: Any) -> Value:
        return shape_of(obj).serialize(obj)

    def deserialize(self, value: Value, path: str) -> Any:
        return to_python(value)


class ValueShape(Shape):
    """Passes Value objects through unchanged, optionally checking the variant."""

    def __init__(self, cls: type = Value):
        self.cls = cls
        self.name = cls.kind if cls is not Value else 'value'

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, self.cls):
            raise TypeMismatchError(f"Expected a {self.cls.__name__}, got {type(obj).__name__}")
        return obj

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, self.cls):
            raise self.mismatch(value, path)
        return value


class BoolShape(Shape):
    name = 'boolean'

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, (bool, np.bool_)):
            raise TypeMismatchError(f"Expected bool, got {type(obj).__name__}")
        return Boolean(bool(obj))

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Boolean):
            raise self.mismatch(value, path)
        return value.value


class IntShape(Shape):
    """Python int: accepts the full signed and unsigned 64-bit range."""

    name = 'integer'

    def serialize(self, obj: Any) -> Value:
        if isinstance(obj, (bool, np.bool_)) or not isinstance(obj, (int, np.integer)):
            raise TypeMismatchError(f"Expected int, got {type(obj).__name__}")
        return Integer(int(obj))

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Integer):
            raise self.mismatch(value, path)
        return value.value


class FloatShape(Shape):
    """Python float: accepts reals and, widened, integers."""

    name = 'real'

    def serialize(self, obj: Any) -> Value:
        if isinstance(obj, (bool, np.bool_)) or not isinstance(obj, (int, float, np.integer, np.floating)):
            raise TypeMismatchError(f"Expected float, got {type(obj).__name__}")
        return Real(float(obj))

    def deserialize(self, value: Value, path: str) -> Any:
        if isinstance(value, (Real, Integer)):
            return float(value.value)
        raise self.mismatch(value, path)


class StrShape(Shape):
    name = 'string'

    def serialize(self, obj: Any) -> Value:
        return String(obj)

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, String):
            raise self.mismatch(value, path)
        return value.value


class BytesShape(Shape):
    name = 'data'

    def serialize(self, obj: Any) -> Value:
        return Data(obj)

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Data):
            raise self.mismatch(value, path)
        return value.value


class DateTimeShape(Shape):
    name = 'date'

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, datetime.datetime):
            raise TypeMismatchError(f"Expected datetime, got {type(obj).__name__}")
        return Date.from_datetime(obj)

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Date):
            raise self.mismatch(value, path)
        return value.to_datetime()


class NumpyScalarShape(Shape):
    """
    A fixed-width numpy scalar type such as np.int32 or np.float32.

    Deserializing checks the value against the type's range, so an Integer
    that does not fit raises NumericRangeError instead of wrapping around.
    """

    def __init__(self, scalar_type: type):
        self.scalar_type = scalar_type
        self.dtype = np.dtype(scalar_type)
        self.name = self.dtype.name

    def serialize(self, obj: Any) -> Value:
        if self.dtype.kind == 'b':
            return BoolShape().serialize(obj)
        if self.dtype.kind in 'iu':
            return IntShape().serialize(obj)
        return FloatShape().serialize(obj)

    def deserialize(self, value: Value, path: str) -> Any:
        kind = self.dtype.kind
        if kind == 'b':
            return self.scalar_type(BoolShape().deserialize(value, path))
        if kind in 'iu':
            if not isinstance(value, Integer):
                raise self.mismatch(value, path)
            limits = np.iinfo(self.dtype)
            if not int(limits.min) <= value.value <= int(limits.max):
                raise NumericRangeError(f"{path}: {value.value} does not fit {self.name}")
            return self.scalar_type(value.value)
        if kind == 'f':
            number = FloatShape().deserialize(value, path)
            limit = float(np.finfo(self.dtype).max)
            if np.isfinite(number) and abs(number) > limit:
                raise NumericRangeError(f"{path}: {number} does not fit {self.name}")
            return self.scalar_type(number)
        raise TypeMismatchError(f"Unsupported numpy type {self.name}")


class NumpyArrayShape(Shape):
    """numpy arrays are plist arrays (nested for more than one dimension)."""

    name = 'array'

    def serialize(self, obj: Any) -> Value:
        return AnyShape().serialize(np.asarray(obj).tolist())

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Array):
            raise self.mismatch(value, path)
        try:
            result = np.asarray(to_python(value))
        except ValueError as exc:
            # ragged nesting
            raise TypeMismatchError(f"{path}: array cannot be read as a numpy array ({exc})")
        if result.dtype == object:
            # numpy before 1.24 returns ragged nesting as an object array
            raise TypeMismatchError(f"{path}: array items do not form a regular numpy array")
        return result


class SequenceShape(Shape):
    name = 'array'

    def __init__(self, item: Shape, factory: type = list):
        self.item = item
        self.factory = factory

    def serialize(self, obj: Any) -> Value:
        if isinstance(obj, (str, bytes, bytearray)) or not isinstance(obj, collections.abc.Iterable):
            raise TypeMismatchError(f"Expected a sequence, got {type(obj).__name__}")
        items = []
        for item in obj:
            if item is None:
                raise UnrepresentableValueError("None cannot be stored in a plist array")
            items.append(self.item.serialize(item))
        return Array(items)

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Array):
            raise self.mismatch(value, path)
        return self.factory(self.item.deserialize(item, f"{path}[{index}]")
                            for index, item in enumerate(value.value))


class TupleShape(Shape):
    """A fixed-length tuple such as Tuple[int, str]."""

    name = 'array'

    def __init__(self, items: List[Shape]):
        self.items = items

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, (tuple, list)) or len(obj) != len(self.items):
            raise TypeMismatchError(f"Expected a tuple of {len(self.items)} items")
        return Array(shape.serialize(item) for shape, item in zip(self.items, obj))

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Array):
            raise self.mismatch(value, path)
        if len(value.value) != len(self.items):
            raise TypeMismatchError(
                f"{path}: expected {len(self.items)} items, found {len(value.value)}")
        return tuple(shape.deserialize(item, f"{path}[{index}]")
                     for index, (shape, item) in enumerate(zip(self.items, value.value)))


class MappingShape(Shape):
    """A mapping with string keys. Entries whose value is None are skipped."""

    name = 'dictionary'

    def __init__(self, item: Shape):
        self.item = item

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, collections.abc.Mapping):
            raise TypeMismatchError(f"Expected a mapping, got {type(obj).__name__}")
        result = Dictionary()
        for key, item in obj.items():
            if not isinstance(key, str):
                raise TypeMismatchError(f"Dictionary keys must be str, got {type(key).__name__}")
            if item is None:
                continue
            result.insert(key, self.item.serialize(item))
        return result

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Dictionary):
            raise self.mismatch(value, path)
        return {key: self.item.deserialize(item, f"{path}.{key}")
                for key, item in value.value.items()}


class OptionalShape(Shape):
    """Optional[T]. Absence is represented by leaving the key out."""

    def __init__(self, inner: Shape):
        self.inner = inner
        self.name = inner.name

    def serialize(self, obj: Any) -> Any:
        if obj is None:
            return ABSENT
        return self.inner.serialize(obj)

    def deserialize(self, value: Value, path: str) -> Any:
        return self.inner.deserialize(value, path)


class EnumShape(Shape):
    """
    Enum members are written as their name.

    The older encoding, a one-entry dictionary mapping the name to an empty
    string, is still accepted when reading.
    """

    def __init__(self, cls: type):
        self.cls = cls
        self.name = cls.__name__

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, self.cls):
            raise TypeMismatchError(f"Expected {self.cls.__name__}, got {type(obj).__name__}")
        return String(obj.name)

    def deserialize(self, value: Value, path: str) -> Any:
        name = value.as_string()
        if name is None and isinstance(value, Dictionary) and len(value) == 1:
            name, payload = next(iter(value.items()))
            if payload != String(''):
                raise self.mismatch(value, path)
        if name is None:
            raise self.mismatch(value, path)
        try:
            return self.cls[name]
        except KeyError:
            raise TypeMismatchError(f"{path}: {name!r} is not a member of {self.cls.__name__}")


class RecordShape(Shape):
    """
    A dataclass, stored as a dictionary keyed by field name.

    Field shapes are resolved on first use so that dataclasses may refer to
    themselves through Optional fields.
    """

    def __init__(self, cls: type):
        self.cls = cls
        self.name = cls.__name__
        self._fields: Optional[List[Tuple[dataclasses.Field, Shape]]] = None

    @property
    def fields(self) -> List[Tuple[dataclasses.Field, Shape]]:
        if self._fields is None:
            hints = typing.get_type_hints(self.cls)
            self._fields = [(field, shape_for(hints.get(field.name, Any)))
                            for field in dataclasses.fields(self.cls)]
        return self._fields

    def serialize(self, obj: Any) -> Value:
        if not isinstance(obj, self.cls):
            raise TypeMismatchError(f"Expected {self.cls.__name__}, got {type(obj).__name__}")
        result = Dictionary()
        for field, shape in self.fields:
            item = getattr(obj, field.name)
            if item is None:
                continue
            encoded = shape.serialize(item)
            if encoded is not ABSENT:
                result.insert(field.name, encoded)
        return result

    def deserialize(self, value: Value, path: str) -> Any:
        if not isinstance(value, Dictionary):
            raise self.mismatch(value, path)
        kwargs = {}
        for field, shape in self.fields:
            if not field.init:
                continue
            item = value.get(field.name)
            if item is not None:
                kwargs[field.name] = shape.deserialize(item, f"{path}.{field.name}")
            elif (field.default is not dataclasses.MISSING
                  or field.default_factory is not dataclasses.MISSING):
                continue
            elif isinstance(shape, OptionalShape):
                kwargs[field.name] = None
            else:
                raise TypeMismatchError(f"{path}: missing field {field.name!r} for {self.name}")
        return self.cls(**kwargs)


_PRIMITIVE_SHAPES: Dict[Any, Shape] = {
    Any: AnyShape(),
    bool: BoolShape(),
    int: IntShape(),
    float: FloatShape(),
    str: StrShape(),
    bytes: BytesShape(),
    datetime.datetime: DateTimeShape(),
    np.ndarray: NumpyArrayShape(),
}

SHAPE_CACHE_SIZE = 256


def shape_for(hint: Any) -> Shape:
    """
    Resolve a type hint into a Shape.

    Raises:
        TypeMismatchError: If the hint is not one of the supported shapes
    """
    if isinstance(hint, Shape):
        return hint
    try:
        hash(hint)
    except TypeError:
        return _resolve(hint)
    return _cached_shape(hint)


@lru_cache(maxsize=SHAPE_CACHE_SIZE)
def _cached_shape(hint: Any) -> Shape:
    return _resolve(hint)


def _resolve(hint: Any) -> Shape:
    if hint in _PRIMITIVE_SHAPES:
        return _PRIMITIVE_SHAPES[hint]

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is typing.Union or origin is getattr(types, 'UnionType', None):
        members = [arg for arg in args if arg is not type(None)]
        if len(members) == 1 and len(args) == 2:
            return OptionalShape(shape_for(members[0]))
        raise TypeMismatchError(f"Unsupported union type {hint!r}")
    if origin in (list, collections.abc.Sequence, collections.abc.MutableSequence,
                  collections.abc.Iterable):
        return SequenceShape(shape_for(args[0] if args else Any))
    if origin is tuple:
        if not args or (len(args) == 2 and args[1] is Ellipsis):
            return SequenceShape(shape_for(args[0] if args else Any), tuple)
        return TupleShape([shape_for(arg) for arg in args])
    if origin in (dict, collections.abc.Mapping, collections.abc.MutableMapping):
        if args and args[0] not in (str, Any):
            raise TypeMismatchError(f"Plist dictionary keys are strings, not {args[0]!r}")
        return MappingShape(shape_for(args[1] if args else Any))

    if isinstance(hint, type):
        if issubclass(hint, Value):
            return ValueShape(hint)
        if issubclass(hint, enum.Enum):
            return EnumShape(hint)
        if dataclasses.is_dataclass(hint):
            return RecordShape(hint)
        if issubclass(hint, np.generic):
            return NumpyScalarShape(hint)
        if hint in (list, tuple):
            return SequenceShape(AnyShape(), hint)
        if hint is dict:
            return MappingShape(AnyShape())
    raise TypeMismatchError(f"Unsupported shape {hint!r}")


def shape_of(obj: Any) -> Shape:
    """Pick the shape for a Python object from its runtime type."""
    if isinstance(obj, Value):
        return ValueShape()
    if obj is None:
        raise UnrepresentableValueError("None has no plist representation outside an optional field")
    if isinstance(obj, enum.Enum):
        return EnumShape(type(obj))
    if isinstance(obj, (bool, np.bool_)):
        return _PRIMITIVE_SHAPES[bool]
    if isinstance(obj, (int, np.integer)):
        return _PRIMITIVE_SHAPES[int]
    if isinstance(obj, (float, np.floating)):
        return _PRIMITIVE_SHAPES[float]
    if isinstance(obj, str):
        return _PRIMITIVE_SHAPES[str]
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return _PRIMITIVE_SHAPES[bytes]
    if isinstance(obj, datetime.datetime):
        return _PRIMITIVE_SHAPES[datetime.datetime]
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return shape_for(type(obj))
    if isinstance(obj, np.ndarray):
        return _PRIMITIVE_SHAPES[np.ndarray]
    if isinstance(obj, collections.abc.Mapping):
        return MappingShape(AnyShape())
    if isinstance(obj, (list, tuple, collections.abc.Sequence)):
        return SequenceShape(AnyShape())
    raise TypeMismatchError(f"Cannot convert {type(obj).__name__} to a plist value")


def to_value(obj: Any, shape: Any = None) -> Value:
    """
    Convert a Python object into a Value tree.

    Args:
        obj: The object to convert
        shape: Optional type hint to serialize ``obj`` as; by default the
               runtime type decides

    Raises:
        UnrepresentableValueError: If the object (or a nested one) is None
        TypeMismatchError: If the object does not match ``shape`` or has no
            plist representation
    """
    resolved = shape_of(obj) if shape is None else shape_for(shape)
    value = resolved.serialize(obj)
    if value is ABSENT:
        raise UnrepresentableValueError("None has no plist representation outside an optional field")
    return value


def from_value(value: Value, shape: Any = Any) -> Any:
    """
    Convert a Value tree into an object of the given shape.

    Raises:
        TypeMismatchError: If a value's variant cannot fill the requested shape
        NumericRangeError: If a number does not fit the requested numeric type
    """
    return shape_for(shape).deserialize(value, '$')


def _leaf_to_python(leaf: Value) -> Any:
    if isinstance(leaf, Date):
        return leaf.to_datetime()
    if isinstance(leaf, Uid):
        return leaf
    return leaf.value


def to_python(value: Value) -> Any:
    """
    Convert a Value tree into lists, dicts, bools, ints, floats, strs,
    bytes and datetimes. Uid values are returned unchanged.
    """
    return rebuild(value, _leaf_to_python, list, dict)
