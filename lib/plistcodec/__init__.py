"""
plistcodec - Property list reading and writing for Python

Reads and writes Apple property lists in the binary ``bplist00`` format and
in the XML format, including the abbreviated XML dialect that uses one
letter tags (``<d>``, ``<k>``, ``<s>``, ...). Documents decode into a tree
of Value objects, and a typed bridge maps that tree to and from dataclasses,
enums, containers and numpy scalars and arrays.

Features:
- Binary plists with deduplicated objects and minimal reference widths
- Strict decoding: bounds, cycles, duplicate keys and expansion limits
- XML plists with standard or abbreviated tags
- Typed loading into dataclasses with optional fields and range checks

Example:

    import plistcodec

    data = plistcodec.dumps_typed({'name': 'Paws', 'lives': 9},
                                  fmt=plistcodec.PlistFormat.BINARY)
    value = plistcodec.loads(data)
    value['lives'].into_integer()  # 9
"""

__version__ = "0.1.0"

import enum
import io
import logging
from typing import Any, BinaryIO, Iterator, Optional

from ._constants import BPLIST_MAGIC, DEFAULT_MAX_NODES
from ._errors import (CyclicReferenceError, DuplicateKeyError, MalformedHeaderError, NumericRangeError,
                      OutOfBoundsError, PlistError, PlistFormatError, ResourceLimitError, TypeMismatchError,
                      UnrepresentableValueError, UnsupportedObjectTypeError, XmlSyntaxError)
from .binary import BinaryPlistReader, BinaryPlistWriter
from .bridge import from_value, to_python, to_value
from .value import Array, Boolean, Data, Date, Dictionary, Integer, Real, String, Uid, Value
from .xmlplist import XmlPlistReader, XmlPlistWriter, iter_events

__all__ = [
    'PlistFormat', 'detect_format', 'load', 'loads', 'dump', 'dumps',
    'load_typed', 'loads_typed', 'dump_typed', 'dumps_typed', 'File',
    'to_value', 'from_value', 'to_python',
    'Value', 'Array', 'Dictionary', 'Boolean', 'Integer', 'Real', 'String', 'Date', 'Data', 'Uid',
    'PlistError', 'PlistFormatError', 'MalformedHeaderError', 'OutOfBoundsError',
    'UnsupportedObjectTypeError', 'DuplicateKeyError', 'CyclicReferenceError', 'XmlSyntaxError',
    'ResourceLimitError', 'UnrepresentableValueError', 'TypeMismatchError', 'NumericRangeError',
]

logging.getLogger(__name__).addHandler(logging.NullHandler())

_UTF8_BOM = b'\xef\xbb\xbf'
_UTF16_BOMS = (b'\xff\xfe', b'\xfe\xff')


class PlistFormat(enum.Enum):
    XML = 'xml'
    BINARY = 'binary'


def detect_format(data: bytes) -> PlistFormat:
    """
    Guess the format of a serialized plist from its first bytes.

    A byte order mark and leading whitespace are skipped before looking for
    the binary magic or the start of an XML prolog.

    Raises:
        PlistFormatError: If the data looks like neither format
    """
    head = bytes(data[:64])
    if head.startswith(_UTF16_BOMS):
        return PlistFormat.XML
    if head.startswith(_UTF8_BOM):
        head = head[len(_UTF8_BOM):]
    if head.startswith(BPLIST_MAGIC):
        return PlistFormat.BINARY
    if head.lstrip().startswith(b'<'):
        return PlistFormat.XML
    raise PlistFormatError("Data is neither a binary nor an XML property list")


def loads(data: bytes, fmt: Optional[PlistFormat] = None, max_nodes: int = DEFAULT_MAX_NODES) -> Value:
    """
    Decode a plist from bytes.

    Args:
        data: The serialized document
        fmt: PlistFormat.XML or PlistFormat.BINARY; detected when None
        max_nodes: Node budget for binary documents with shared objects

    Returns:
        Value: The top value of the document
    """
    if fmt is None:
        fmt = detect_format(data)
    if fmt is PlistFormat.BINARY:
        return BinaryPlistReader(data, max_nodes=max_nodes).read()
    return XmlPlistReader(data).read()


def load(fp: BinaryIO, fmt: Optional[PlistFormat] = None, max_nodes: int = DEFAULT_MAX_NODES) -> Value:
    """Decode a plist from a binary file object. See ``loads``."""
    return loads(fp.read(), fmt=fmt, max_nodes=max_nodes)


def dump(value: Value, fp: BinaryIO, fmt: PlistFormat = PlistFormat.XML, short_tags: bool = False):
    """
    Encode a Value tree into a binary file object.

    Args:
        value: The top value
        fp: File object opened for binary writing
        fmt: PlistFormat.XML (default) or PlistFormat.BINARY
        short_tags: Use the abbreviated XML tag set; ignored for binary
    """
    if fmt is PlistFormat.BINARY:
        BinaryPlistWriter(fp).write(value)
    else:
        XmlPlistWriter(fp, short_tags=short_tags).write(value)


def dumps(value: Value, fmt: PlistFormat = PlistFormat.XML, short_tags: bool = False) -> bytes:
    """Encode a Value tree and return the bytes. See ``dump``."""
    buffer = io.BytesIO()
    dump(value, buffer, fmt=fmt, short_tags=short_tags)
    return buffer.getvalue()


def loads_typed(data: bytes, shape: Any, fmt: Optional[PlistFormat] = None,
                max_nodes: int = DEFAULT_MAX_NODES) -> Any:
    """Decode a plist from bytes straight into ``shape`` (a type hint)."""
    return from_value(loads(data, fmt=fmt, max_nodes=max_nodes), shape)


def load_typed(fp: BinaryIO, shape: Any, fmt: Optional[PlistFormat] = None,
               max_nodes: int = DEFAULT_MAX_NODES) -> Any:
    return loads_typed(fp.read(), shape, fmt=fmt, max_nodes=max_nodes)


def dump_typed(obj: Any, fp: BinaryIO, fmt: PlistFormat = PlistFormat.XML, short_tags: bool = False):
    """Encode a Python object (dataclass, dict, list, ...) into a file object."""
    dump(to_value(obj), fp, fmt=fmt, short_tags=short_tags)


def dumps_typed(obj: Any, fmt: PlistFormat = PlistFormat.XML, short_tags: bool = False) -> bytes:
    return dumps(to_value(obj), fmt=fmt, short_tags=short_tags)


class File:
    """
    A class for reading and writing plist files.

    In read mode the document is decoded on first access and kept, so
    ``keys()``, ``len()`` and indexing work on the decoded top value.
    """

    def __init__(self, filename: str, mode: str = 'r', fmt: Optional[PlistFormat] = None,
                 short_tags: bool = False, max_nodes: int = DEFAULT_MAX_NODES):
        """
        Initialize a plistcodec.File object.

        Args:
            filename: Path to the file
            mode: File mode ('w' for write, 'r' for read)
            fmt: The plist format. Detected from the content when reading
                 with None; XML when writing with None.
            short_tags: Use the abbreviated XML tag set when writing
            max_nodes: Node budget for binary documents when reading
        """
        self.filename = filename
        self.mode = mode
        self.fmt = fmt
        self.short_tags = short_tags
        self.max_nodes = max_nodes
        self.file = None

        # Decoded top value (read mode, set on first access)
        self._root: Optional[Value] = None

    def __enter__(self):
        """Context manager entry point."""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit point."""
        self.close()

    def open(self):
        """Open the file for reading or writing."""
        if self.mode == 'w':
            self.file = open(self.filename, 'wb')
        elif self.mode == 'r':
            self.file = open(self.filename, 'rb')
        else:
            raise ValueError(f"Unsupported mode: {self.mode}")

    def close(self):
        """Close the file."""
        if self.file and not self.file.closed:
            self.file.close()

    def _check_readable(self):
        if not self.file or self.file.closed:
            raise IOError("File is not open for reading")

        if self.mode != 'r':
            raise IOError("File is not open in read mode")

    def write(self, data: Any):
        """
        Write a Value tree or a Python object to the file.

        Args:
            data: A Value, or any object the typed bridge can convert
        """
        if not self.file or self.file.closed:
            raise IOError("File is not open for writing")

        if self.mode != 'w':
            raise IOError("File is not open in write mode")

        value = data if isinstance(data, Value) else to_value(data)
        dump(value, self.file, fmt=self.fmt or PlistFormat.XML, short_tags=self.short_tags)

    def read(self) -> Value:
        """
        Read the file and return its top value.

        Returns:
            Value: The decoded document
        """
        self._check_readable()

        if self._root is None:
            self.file.seek(0)
            self._root = load(self.file, fmt=self.fmt, max_nodes=self.max_nodes)
        return self._root

    def read_typed(self, shape: Any) -> Any:
        """Read the file and convert the document into ``shape`` (a type hint)."""
        return from_value(self.read(), shape)

    def read_debug(self) -> Iterator[str]:
        """
        Iterator over a low level listing of the file.

        Binary files list one line per object in the object table; XML
        files list the parser events with their line numbers.
        """
        self._check_readable()

        self.file.seek(0)
        data = self.file.read()
        fmt = self.fmt or detect_format(data)
        if fmt is PlistFormat.BINARY:
            return BinaryPlistReader(data, max_nodes=self.max_nodes).read_debug()
        return (f"{line:>6} {kind:<5} {payload}" for kind, payload, line in iter_events(data))

    def __getitem__(self, key):
        """
        Access an element of the top value.

        Args:
            key: A string for dictionaries, an index or slice for arrays

        Raises:
            TypeError: If the top value is neither an array nor a dictionary
        """
        root = self.read()
        if not isinstance(root, (Array, Dictionary)):
            raise TypeError(f"Top value is a {root.kind}, not a container")
        return root[key]

    def keys(self):
        """
        Return a list of keys if the top value is a dictionary.

        Raises:
            TypeError: If the top value is not a dictionary
            IOError: If the file is not open for reading
        """
        root = self.read()
        if not isinstance(root, Dictionary):
            raise TypeError(f"Top value is a {root.kind}, not a dictionary")
        return list(root.keys())

    def __len__(self):
        """
        Return the number of items of the top array or dictionary.

        Raises:
            TypeError: If the top value is neither an array nor a dictionary
        """
        root = self.read()
        if not isinstance(root, (Array, Dictionary)):
            raise TypeError(f"Top value is a {root.kind}, not a container")
        return len(root)
