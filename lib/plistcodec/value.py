"""
In-memory plist values.

A plist document is a tree of Value objects. There are nine variants:
Array, Dictionary, Boolean, Integer, Real, String, Date, Data and Uid.
Every variant offers the same set of narrowing accessors (``as_array``,
``as_string``, ...) which return None when the variant does not match, and
owning conversions (``into_array``, ``into_string``, ...) which raise
TypeMismatchError instead.

Equality is structural and variant-aware: ``Integer(1) == Integer(1)``
holds whether the value came from a signed or an unsigned encoding, but
``Integer(1) != Real(1.0)``.

Leaf values are treated as immutable. Arrays and Dictionaries are mutable
containers and are never shared between two places in a decoded tree.
"""

import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ._constants import INT64_MAX, INT64_MIN, UINT64_MAX
from ._dates import datetime_to_offset, offset_to_datetime
from ._errors import DuplicateKeyError, TypeMismatchError, UnrepresentableValueError


class Value:
    """Base class of all plist values."""

    __slots__ = ()

    # Variant name used in error messages
    kind = 'value'

    def as_array(self) -> Optional[List['Value']]:
        return None

    def as_dictionary(self) -> Optional['Dictionary']:
        return None

    def as_boolean(self) -> Optional[bool]:
        return None

    def as_signed_integer(self) -> Optional[int]:
        return None

    def as_unsigned_integer(self) -> Optional[int]:
        return None

    def as_real(self) -> Optional[float]:
        return None

    def as_string(self) -> Optional[str]:
        return None

    def as_date(self) -> Optional[float]:
        return None

    def as_data(self) -> Optional[bytes]:
        return None

    def as_uid(self) -> Optional[int]:
        return None

    def _into(self, wanted: str, found: Any) -> Any:
        if found is None:
            raise TypeMismatchError(f"Expected {wanted}, found {self.kind}")
        return found

    def into_array(self) -> List['Value']:
        return self._into('array', self.as_array())

    def into_dictionary(self) -> 'Dictionary':
        return self._into('dictionary', self.as_dictionary())

    def into_boolean(self) -> bool:
        return self._into('boolean', self.as_boolean())

    def into_integer(self) -> int:
        return self._into('integer', None)

    def into_real(self) -> float:
        return self._into('real', self.as_real())

    def into_string(self) -> str:
        return self._into('string', self.as_string())

    def into_date(self) -> float:
        return self._into('date', self.as_date())

    def into_data(self) -> bytes:
        return self._into('data', self.as_data())

    def into_uid(self) -> int:
        return self._into('uid', self.as_uid())

    def copy(self) -> 'Value':
        """Return a deep copy of this value."""
        return rebuild(self, lambda leaf: leaf, Array, Dictionary)

    def __eq__(self, other):
        if not isinstance(other, Value):
            return NotImplemented
        return values_equal(self, other)


class _Leaf(Value):
    """A value with a single immutable payload."""

    __slots__ = ('value',)

    def __hash__(self):
        return hash((type(self), self.value))

    def __repr__(self):
        return f'{type(self).__name__}({self.value!r})'


class Boolean(_Leaf):
    __slots__ = ()
    kind = 'boolean'

    def __init__(self, value: bool):
        self.value = bool(value)

    def as_boolean(self) -> Optional[bool]:
        return self.value


class Integer(_Leaf):
    """
    A 64-bit integer, either signed or unsigned.

    The payload is a Python int in the range [-2**63, 2**64 - 1]. Values above
    2**63 - 1 can only come from (or be written as) the unsigned encoding.
    """

    __slots__ = ()
    kind = 'integer'

    def __init__(self, value: int):
        if isinstance(value, bool) or not hasattr(value, '__index__'):
            raise TypeMismatchError(f"Integer requires an int, got {type(value).__name__}")
        value = int(value)
        if not INT64_MIN <= value <= UINT64_MAX:
            raise UnrepresentableValueError(f"Integer out of 64-bit range: {value}")
        self.value = value

    @property
    def is_unsigned(self) -> bool:
        """True if the value only fits the unsigned 64-bit encoding."""
        return self.value > INT64_MAX

    def as_signed_integer(self) -> Optional[int]:
        return self.value if self.value <= INT64_MAX else None

    def as_unsigned_integer(self) -> Optional[int]:
        return self.value if self.value >= 0 else None

    def into_integer(self) -> int:
        return self.value


class Real(_Leaf):
    __slots__ = ()
    kind = 'real'

    def __init__(self, value: float):
        if isinstance(value, (str, bytes)) or not hasattr(value, '__float__'):
            raise TypeMismatchError(f"Real requires a number, got {type(value).__name__}")
        self.value = float(value)

    def as_real(self) -> Optional[float]:
        return self.value


class String(_Leaf):
    __slots__ = ()
    kind = 'string'

    def __init__(self, value: str):
        if not isinstance(value, str):
            raise TypeMismatchError(f"String requires a str, got {type(value).__name__}")
        self.value = value

    def as_string(self) -> Optional[str]:
        return self.value


class Date(_Leaf):
    """A point in time, stored as float seconds since 2001-01-01T00:00:00Z."""

    __slots__ = ()
    kind = 'date'

    def __init__(self, offset: float):
        self.value = float(offset)

    @classmethod
    def from_datetime(cls, value: datetime.datetime) -> 'Date':
        return cls(datetime_to_offset(value))

    def to_datetime(self) -> datetime.datetime:
        """Return the date as an aware UTC datetime (microsecond precision)."""
        return offset_to_datetime(self.value)

    def as_date(self) -> Optional[float]:
        return self.value


class Data(_Leaf):
    __slots__ = ()
    kind = 'data'

    def __init__(self, value: Union[bytes, bytearray, memoryview]):
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeMismatchError(f"Data requires bytes, got {type(value).__name__}")
        self.value = bytes(value)

    def as_data(self) -> Optional[bytes]:
        return self.value


class Uid(_Leaf):
    """A keyed-archive object reference. It is kept as a number and never resolved."""

    __slots__ = ()
    kind = 'uid'

    def __init__(self, value: int):
        if isinstance(value, bool) or not hasattr(value, '__index__'):
            raise TypeMismatchError(f"Uid requires an int, got {type(value).__name__}")
        value = int(value)
        if not 0 <= value <= UINT64_MAX:
            raise UnrepresentableValueError(f"Uid out of range: {value}")
        self.value = value

    def as_uid(self) -> Optional[int]:
        return self.value


class Array(Value):
    """An ordered sequence of values."""

    __slots__ = ('value',)
    kind = 'array'
    __hash__ = None

    def __init__(self, items: Iterable[Value] = ()):
        self.value: List[Value] = []
        for item in items:
            self.append(item)

    def append(self, item: Value):
        if not isinstance(item, Value):
            raise TypeMismatchError(f"Array items must be Values, got {type(item).__name__}")
        self.value.append(item)

    def extend(self, items: Iterable[Value]):
        for item in items:
            self.append(item)

    def as_array(self) -> Optional[List[Value]]:
        return self.value

    def __len__(self):
        return len(self.value)

    def __iter__(self) -> Iterator[Value]:
        return iter(self.value)

    def __getitem__(self, index):
        return self.value[index]

    def __repr__(self):
        return f'Array({self.value!r})'


class Dictionary(Value):
    """
    A mapping from string keys to values.

    Keys are unique and insertion order is kept. ``insert`` refuses a key
    that is already present; ``__setitem__`` replaces the value of an
    existing key in place (keeping its position) or appends a new one.
    """

    __slots__ = ('value',)
    kind = 'dictionary'
    __hash__ = None

    def __init__(self, items: Union[Dict[str, Value], Iterable[Tuple[str, Value]], None] = None):
        self.value: Dict[str, Value] = {}
        if items is None:
            return
        if hasattr(items, 'items'):
            items = items.items()
        for key, item in items:
            self.insert(key, item)

    @staticmethod
    def _check(key: str, item: Value):
        if not isinstance(key, str):
            raise TypeMismatchError(f"Dictionary keys must be str, got {type(key).__name__}")
        if not isinstance(item, Value):
            raise TypeMismatchError(f"Dictionary values must be Values, got {type(item).__name__}")

    def insert(self, key: str, item: Value):
        """
        Add a new key.

        Raises:
            DuplicateKeyError: If the key is already present
        """
        self._check(key, item)
        if key in self.value:
            raise DuplicateKeyError(key)
        self.value[key] = item

    def remove(self, key: str) -> Value:
        return self.value.pop(key)

    def get(self, key: str, default: Optional[Value] = None) -> Optional[Value]:
        return self.value.get(key, default)

    def keys(self):
        return self.value.keys()

    def values(self):
        return self.value.values()

    def items(self):
        return self.value.items()

    def as_dictionary(self) -> Optional['Dictionary']:
        return self

    def __setitem__(self, key: str, item: Value):
        self._check(key, item)
        self.value[key] = item

    def __getitem__(self, key: str) -> Value:
        return self.value[key]

    def __delitem__(self, key: str):
        del self.value[key]

    def __contains__(self, key):
        return key in self.value

    def __len__(self):
        return len(self.value)

    def __iter__(self) -> Iterator[str]:
        return iter(self.value)

    def __repr__(self):
        return f'Dictionary({self.value!r})'


def values_equal(a: Value, b: Value) -> bool:
    """Structural equality without recursion. Dictionary order is not compared."""
    stack = [(a, b)]
    while stack:
        left, right = stack.pop()
        if type(left) is not type(right):
            return False
        if isinstance(left, Array):
            if len(left.value) != len(right.value):
                return False
            stack.extend(zip(left.value, right.value))
        elif isinstance(left, Dictionary):
            if left.value.keys() != right.value.keys():
                return False
            stack.extend((item, right.value[key]) for key, item in left.value.items())
        elif left.value != right.value:
            return False
    return True


def rebuild(root: Value,
            convert_leaf: Callable[[Value], Any],
            build_array: Callable[[List[Any]], Any],
            build_dict: Callable[[List[Tuple[str, Any]]], Any]) -> Any:
    """
    Rebuild a value tree bottom-up without recursion.

    Each leaf is passed to ``convert_leaf``; each container is rebuilt from
    the converted children with ``build_array`` (a list) or ``build_dict``
    (a list of key/child pairs in stored order).
    """
    stack: List[Tuple[Value, bool]] = [(root, False)]
    results: List[Any] = []
    while stack:
        node, expanded = stack.pop()
        if isinstance(node, Array):
            if expanded:
                count = len(node.value)
                items = results[len(results) - count:]
                del results[len(results) - count:]
                results.append(build_array(items))
            else:
                stack.append((node, True))
                stack.extend((child, False) for child in reversed(node.value))
        elif isinstance(node, Dictionary):
            if expanded:
                count = len(node.value)
                items = results[len(results) - count:]
                del results[len(results) - count:]
                results.append(build_dict(list(zip(node.value.keys(), items))))
            else:
                stack.append((node, True))
                stack.extend((child, False) for child in reversed(list(node.value.values())))
        else:
            results.append(convert_leaf(node))
    return results[0]
