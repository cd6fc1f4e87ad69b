"""
Binary property list reader and writer (``bplist00``).

Layout of a binary plist:

    <header>       8 bytes, "bplist00"
    <objects>      one encoding per object, each starting with a marker byte
    <offset table> object count big-endian unsigned ints of offset_size bytes
    <trailer>      32 bytes: 5 unused, sort version, offset_size, ref_size,
                   uint64 object count, uint64 top object, uint64 table offset

Marker bytes (high nibble = type, low nibble = length or type flag):

    0000 1000               false
    0000 1001               true
    0001 nnnn  ...          integer of 2**n bytes (1, 2, 4 unsigned; 8, 16 signed)
    0010 nnnn  ...          real of 2**n bytes (4 or 8)
    0011 0011  ...          date, 8 byte float seconds since 2001-01-01
    0100 nnnn  [int] ...    data, nnnn bytes
    0101 nnnn  [int] ...    ASCII string, nnnn chars
    0110 nnnn  [int] ...    UTF-16BE string, nnnn code units
    1000 nnnn  ...          uid of nnnn+1 bytes
    1010 nnnn  [int] refs   array
    1101 nnnn  [int] keyrefs valrefs   dictionary

A length nibble of 1111 means the real length follows as an integer object.
Containers hold object indices (refs) of ref_size bytes instead of their
children, so one object can be referenced from many places.
"""

import logging
import struct
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from ._constants import (
    BPLIST_HEADER,
    BPLIST_MAGIC,
    BPLIST_VERSION,
    DEFAULT_MAX_NODES,
    INT64_MAX,
    INT64_MIN,
    LENGTH_FOLLOWS,
    MARKER_ARRAY,
    MARKER_ASCII,
    MARKER_DATA,
    MARKER_DATE,
    MARKER_DICT,
    MARKER_FALSE,
    MARKER_INT,
    MARKER_REAL,
    MARKER_TRUE,
    MARKER_UID,
    MARKER_UTF16,
    TRAILER_SIZE,
    TRAILER_STRUCT,
    UINT64_MAX,
    WRITER_WIDTHS,
)
from ._errors import (
    CyclicReferenceError,
    MalformedHeaderError,
    OutOfBoundsError,
    PlistFormatError,
    ResourceLimitError,
    UnrepresentableValueError,
    UnsupportedObjectTypeError,
)
from .value import Array, Boolean, Data, Date, Dictionary, Integer, Real, String, Uid, Value

logger = logging.getLogger(__name__)

_DOUBLE = struct.Struct('>d')
_FLOAT = struct.Struct('>f')


def byte_width(value: int, widths: Tuple[int, ...] = WRITER_WIDTHS) -> int:
    """
    Return the smallest width in ``widths`` that can hold ``value`` unsigned.

    Raises:
        UnrepresentableValueError: If no width is large enough
    """
    for width in widths:
        if value < 1 << (8 * width):
            return width
    raise UnrepresentableValueError(f"Value {value} does not fit in {widths[-1]} bytes")


def unpack_uints(data: bytes, offset: int, width: int, count: int) -> List[int]:
    """
    Read ``count`` big-endian unsigned integers of ``width`` bytes.

    The caller is responsible for checking that the bytes are available.
    """
    if count == 0:
        return []
    if width in WRITER_WIDTHS:
        return np.frombuffer(data, dtype=f'>u{width}', count=count, offset=offset).tolist()

    # Odd widths (3, 5, 6, 7) have no dtype; fold the byte columns instead
    columns = np.frombuffer(data, dtype=np.uint8, count=count * width, offset=offset)
    columns = columns.reshape(count, width).astype(np.uint64)
    values = np.zeros(count, dtype=np.uint64)
    for column in range(width):
        values = (values << np.uint64(8)) | columns[:, column]
    return values.tolist()


def pack_uints(values: List[int], width: int) -> bytes:
    """Encode integers as big-endian unsigned values of ``width`` bytes."""
    return np.asarray(values, dtype=f'>u{width}').tobytes()


class BinaryPlistReader:
    """
    Decode a binary plist held in memory.

    The reader needs random access, so file objects are read completely
    before parsing. Objects are resolved with an explicit work-list starting
    from the top object. Every object is parsed at most once; containers that
    are referenced from several places are deep-copied at each additional
    reference so the returned tree never shares nodes.
    """

    def __init__(self, data: bytes, max_nodes: int = DEFAULT_MAX_NODES):
        """
        Initialize a BinaryPlistReader.

        Args:
            data: The complete binary plist
            max_nodes: Upper bound on the number of nodes in the returned tree,
                       counting every copy of a shared container
        """
        self.data = bytes(data)
        self.max_nodes = max_nodes

        # Trailer fields (set by _read_trailer)
        self.offset_size = 0
        self.ref_size = 0
        self.object_count = 0
        self.top_object = 0
        self.offset_table_offset = 0
        self.offsets: List[int] = []

        # Decode statistics
        self.objects_parsed = 0
        self.cache_hits = 0

    def read(self) -> Value:
        """
        Decode the document and return its top object.

        Raises:
            MalformedHeaderError: If the magic or version is wrong
            OutOfBoundsError: If any offset, length or reference leaves the buffer
            UnsupportedObjectTypeError: For unknown or unsupported markers
            CyclicReferenceError: If an object contains itself
            DuplicateKeyError: If a dictionary repeats a key
            ResourceLimitError: If the expanded tree exceeds max_nodes
        """
        self._read_header()
        self._read_trailer()
        self._read_offset_table()
        return self._read_objects()

    def _read_header(self):
        if len(self.data) < len(BPLIST_HEADER) + TRAILER_SIZE:
            raise OutOfBoundsError(f"Binary plist too short: {len(self.data)} bytes")
        magic = self.data[:len(BPLIST_MAGIC)]
        version = self.data[len(BPLIST_MAGIC):len(BPLIST_HEADER)]
        if magic != BPLIST_MAGIC:
            raise MalformedHeaderError(f"Wrong magic {magic!r}, expecting {BPLIST_MAGIC!r}")
        if version != BPLIST_VERSION:
            raise MalformedHeaderError(f"Unsupported binary plist version {version!r}")

    def _read_trailer(self):
        trailer_start = len(self.data) - TRAILER_SIZE
        (_sort_version,
         self.offset_size,
         self.ref_size,
         self.object_count,
         self.top_object,
         self.offset_table_offset) = TRAILER_STRUCT.unpack_from(self.data, trailer_start)

        logger.debug("offset size: %d", self.offset_size)
        logger.debug("ref size: %d", self.ref_size)
        logger.debug("objects: %d", self.object_count)
        logger.debug("top object: %d", self.top_object)
        logger.debug("offset table: %d", self.offset_table_offset)

        # A truncated document puts arbitrary bytes where the trailer should
        # be, so every inconsistency here is reported as out of bounds
        if not 1 <= self.offset_size <= 8:
            raise OutOfBoundsError(f"Invalid offset size {self.offset_size} in trailer")
        if not 1 <= self.ref_size <= 8:
            raise OutOfBoundsError(f"Invalid object reference size {self.ref_size} in trailer")
        if self.object_count < 1 or self.object_count > 1 << (8 * self.ref_size):
            raise OutOfBoundsError(f"Object count {self.object_count} does not fit the reference size")
        if self.top_object >= self.object_count:
            raise OutOfBoundsError(f"Top object {self.top_object} outside object table of {self.object_count}")
        if self.offset_table_offset < len(BPLIST_HEADER):
            raise OutOfBoundsError(f"Offset table at {self.offset_table_offset} overlaps the header")
        table_end = self.offset_table_offset + self.object_count * self.offset_size
        if table_end > trailer_start:
            raise OutOfBoundsError(
                f"Offset table ends at {table_end}, past the trailer at {trailer_start}")

    def _read_offset_table(self):
        self.offsets = unpack_uints(self.data, self.offset_table_offset,
                                    self.offset_size, self.object_count)
        for index, offset in enumerate(self.offsets):
            if not len(BPLIST_HEADER) <= offset < self.offset_table_offset:
                raise OutOfBoundsError(f"Object {index} has offset {offset} outside the object area")

    def _check_span(self, position: int, size: int):
        if position + size > self.offset_table_offset:
            raise OutOfBoundsError(
                f"Reading {size} bytes at {position} runs past the object area "
                f"(ends at {self.offset_table_offset})")

    def _read_bytes(self, position: int, size: int) -> bytes:
        self._check_span(position, size)
        return self.data[position:position + size]

    def _read_length(self, low: int, position: int) -> Tuple[int, int]:
        """Return (length, position after the length) for a marker's low nibble."""
        if low != LENGTH_FOLLOWS:
            return low, position
        marker = self._read_bytes(position, 1)[0]
        if marker >> 4 != MARKER_INT or marker & 0xF > 3:
            raise PlistFormatError(f"Invalid length marker 0x{marker:02x} at offset {position}")
        width = 1 << (marker & 0xF)
        raw = self._read_bytes(position + 1, width)
        return int.from_bytes(raw, 'big'), position + 1 + width

    def _read_refs(self, position: int, count: int) -> List[int]:
        self._check_span(position, count * self.ref_size)
        refs = unpack_uints(self.data, position, self.ref_size, count)
        for ref in refs:
            if ref >= self.object_count:
                raise OutOfBoundsError(f"Object reference {ref} outside object table of {self.object_count}")
        return refs

    def _parse_object(self, index: int) -> Tuple[Any, Optional[List[int]]]:
        """
        Parse the object at ``index``.

        Returns:
            (value, None) for leaf objects, or (container_type, refs) for arrays
            and dictionaries. Dictionary refs hold the key refs followed by the
            value refs.
        """
        offset = self.offsets[index]
        marker = self._read_bytes(offset, 1)[0]
        high, low = marker >> 4, marker & 0xF
        position = offset + 1
        self.objects_parsed += 1

        if marker == MARKER_FALSE:
            return Boolean(False), None
        if marker == MARKER_TRUE:
            return Boolean(True), None
        if high == MARKER_INT:
            if low > 4:
                raise UnsupportedObjectTypeError(f"Integer of {1 << low} bytes at offset {offset}")
            return Integer(self._decode_int(self._read_bytes(position, 1 << low), offset)), None
        if high == MARKER_REAL:
            if low == 2:
                return Real(_FLOAT.unpack(self._read_bytes(position, 4))[0]), None
            if low == 3:
                return Real(_DOUBLE.unpack(self._read_bytes(position, 8))[0]), None
            raise UnsupportedObjectTypeError(f"Real of {1 << low} bytes at offset {offset}")
        if marker == MARKER_DATE:
            return Date(_DOUBLE.unpack(self._read_bytes(position, 8))[0]), None
        if high == MARKER_UID:
            if low > 7:
                raise UnsupportedObjectTypeError(f"Uid of {low + 1} bytes at offset {offset}")
            return Uid(int.from_bytes(self._read_bytes(position, low + 1), 'big')), None

        if high in (MARKER_DATA, MARKER_ASCII, MARKER_UTF16, MARKER_ARRAY, MARKER_DICT):
            length, position = self._read_length(low, position)
            if high == MARKER_DATA:
                return Data(self._read_bytes(position, length)), None
            if high == MARKER_ASCII:
                raw = self._read_bytes(position, length)
                try:
                    return String(raw.decode('ascii')), None
                except UnicodeDecodeError:
                    raise PlistFormatError(f"Non-ASCII byte in ASCII string at offset {offset}")
            if high == MARKER_UTF16:
                raw = self._read_bytes(position, 2 * length)
                return String(raw.decode('utf-16-be', errors='surrogatepass')), None
            if high == MARKER_ARRAY:
                return Array, self._read_refs(position, length)
            return Dictionary, self._read_refs(position, 2 * length)

        raise UnsupportedObjectTypeError(f"Unsupported object marker 0x{marker:02x} at offset {offset}")

    @staticmethod
    def _decode_int(raw: bytes, offset: int) -> int:
        # 1, 2 and 4 byte integers are unsigned, 8 and 16 byte ones signed
        if len(raw) < 8:
            return int.from_bytes(raw, 'big')
        value = int.from_bytes(raw, 'big', signed=True)
        if len(raw) == 16 and not INT64_MIN <= value <= UINT64_MAX:
            raise PlistFormatError(f"128-bit integer at offset {offset} is out of 64-bit range")
        return value

    def _read_objects(self) -> Value:
        """
        Resolve the top object with explicit stacks instead of recursion.

        The first pass parses every reachable object once, rejects cycles and
        counts the nodes of the expanded tree. Containers are only built in
        the second pass, once the tree is known to fit in max_nodes.
        """
        leaves: Dict[int, Value] = {}
        containers: Dict[int, Tuple[type, List[int]]] = {}
        sizes: Dict[int, int] = {}
        in_progress: Set[int] = set()
        completed: List[int] = []

        # Entries are (index, False) before parsing and (index, True) once a
        # container's children have been scheduled
        stack: List[Tuple[int, bool]] = [(self.top_object, False)]
        while stack:
            index, expanded = stack[-1]

            if expanded:
                size = 1 + sum(sizes[ref] for ref in containers[index][1])
                if size > self.max_nodes:
                    raise ResourceLimitError(
                        f"Object {index} expands to {size} nodes, more than the limit of {self.max_nodes}")
                sizes[index] = size
                in_progress.discard(index)
                completed.append(index)
                stack.pop()
                continue

            if index in sizes:
                self.cache_hits += 1
                stack.pop()
                continue
            value, refs = self._parse_object(index)
            if refs is None:
                leaves[index] = value
                sizes[index] = 1
                stack.pop()
                continue
            containers[index] = (value, refs)
            in_progress.add(index)
            stack[-1] = (index, True)
            for ref in reversed(refs):
                if ref in in_progress:
                    raise CyclicReferenceError(f"Object {index} refers back to object {ref}")
                if ref not in sizes:
                    stack.append((ref, False))

        logger.debug("parsed %d objects, %d cache hits, %d nodes",
                     self.objects_parsed, self.cache_hits, sizes[self.top_object])

        built: Dict[int, Value] = dict(leaves)
        placed: Set[int] = set()
        for index in completed:
            container_type, refs = containers[index]
            children = [self._take(ref, built, placed) for ref in refs]
            if container_type is Array:
                built[index] = Array(children)
            else:
                built[index] = self._build_dictionary(index, children)
        return built[self.top_object]

    @staticmethod
    def _take(ref: int, cache: Dict[int, Value], placed: Set[int]) -> Value:
        value = cache[ref]
        if not isinstance(value, (Array, Dictionary)):
            return value
        if ref in placed:
            return value.copy()
        placed.add(ref)
        return value

    @staticmethod
    def _build_dictionary(index: int, children: List[Value]) -> Dictionary:
        half = len(children) // 2
        dictionary = Dictionary()
        for key, item in zip(children[:half], children[half:]):
            if not isinstance(key, String):
                raise PlistFormatError(f"Dictionary {index} has a {key.kind} key")
            dictionary.insert(key.value, item)
        return dictionary

    def read_debug(self) -> Iterator[str]:
        """
        Iterate over formatted descriptions of every object in the table.

        Each line holds the object index, its byte offset, the marker byte and
        a short summary. Container lines list the referenced indices.
        """
        self._read_header()
        self._read_trailer()
        self._read_offset_table()
        yield (f"bplist00 objects={self.object_count} top={self.top_object} "
               f"offset_size={self.offset_size} ref_size={self.ref_size} "
               f"table={self.offset_table_offset}")
        for index, offset in enumerate(self.offsets):
            marker = self.data[offset]
            value, refs = self._parse_object(index)
            if refs is None:
                summary = repr(value)
                if len(summary) > 60:
                    summary = summary[:57] + '...'
            elif value is Array:
                summary = f"array[{len(refs)}] -> {' '.join(map(str, refs))}"
            else:
                half = len(refs) // 2
                pairs = ' '.join(f"{k}:{v}" for k, v in zip(refs[:half], refs[half:]))
                summary = f"dict[{half}] -> {pairs}"
            yield f"{index:>6} @{offset:<8} 0x{marker:02x} {summary}"


class BinaryPlistWriter:
    """
    Encode a Value tree as a binary plist.

    Equal leaves and structurally equal containers are written once and
    referenced by index wherever they recur. Objects are numbered in
    post-order (children before their container), so the top object is the
    last one. Reference and offset widths are the smallest of 1, 2, 4 or 8
    bytes that fit.
    """

    def __init__(self, file: BinaryIO):
        """
        Initialize a BinaryPlistWriter.

        Args:
            file: The file object to write to
        """
        self.file = file

    def write(self, value: Value):
        """
        Write a complete binary plist for ``value``.

        Raises:
            UnrepresentableValueError: If the tree holds something that is not
                a Value or a length the format cannot address
        """
        objects = self._collect(value)
        top_object = len(objects) - 1
        ref_size = byte_width(top_object)

        self.file.write(BPLIST_HEADER)
        position = len(BPLIST_HEADER)
        offsets = []
        for obj in objects:
            encoded = self._encode_object(obj, ref_size)
            offsets.append(position)
            self.file.write(encoded)
            position += len(encoded)

        offset_size = byte_width(offsets[-1])
        offset_table_offset = position
        self.file.write(pack_uints(offsets, offset_size))
        self.file.write(TRAILER_STRUCT.pack(0, offset_size, ref_size, len(objects),
                                            top_object, offset_table_offset))
        logger.debug("wrote %d objects, ref size %d, offset size %d",
                     len(objects), ref_size, offset_size)

    @staticmethod
    def _leaf_key(node: Value) -> Tuple:
        # Floats are keyed by their bytes so that 0.0 and -0.0 stay apart
        if isinstance(node, (Real, Date)):
            return (type(node), _DOUBLE.pack(node.value))
        return (type(node), node.value)

    def _collect(self, root: Value) -> List[Tuple]:
        """
        Flatten the tree into a deduplicated object list.

        Returns:
            A list of ('leaf', value), ('array', refs) or ('dict', key_refs,
            value_refs) tuples in post-order.
        """
        index_of: Dict[Tuple, int] = {}
        objects: List[Tuple] = []
        results: List[int] = []

        stack: List[Tuple[Any, bool]] = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            if isinstance(node, Array):
                if not expanded:
                    stack.append((node, True))
                    stack.extend((child, False) for child in reversed(node.value))
                    continue
                count = len(node.value)
                refs = tuple(results[len(results) - count:])
                del results[len(results) - count:]
                key = ('array', refs)
                obj = key
            elif isinstance(node, Dictionary):
                if not expanded:
                    stack.append((node, True))
                    children = [String(name) for name in node.value] + list(node.value.values())
                    stack.extend((child, False) for child in reversed(children))
                    continue
                count = 2 * len(node.value)
                refs = tuple(results[len(results) - count:])
                del results[len(results) - count:]
                key = ('dict', refs[:count // 2], refs[count // 2:])
                obj = key
            elif isinstance(node, Value):
                key = self._leaf_key(node)
                obj = ('leaf', node)
            else:
                raise UnrepresentableValueError(f"Cannot encode {type(node).__name__} in a binary plist")

            index = index_of.get(key)
            if index is None:
                index = len(objects)
                index_of[key] = index
                objects.append(obj)
            results.append(index)
        return objects

    def _encode_object(self, obj: Tuple, ref_size: int) -> bytes:
        kind = obj[0]
        if kind == 'array':
            refs = obj[1]
            return self._marker(MARKER_ARRAY, len(refs)) + pack_uints(list(refs), ref_size)
        if kind == 'dict':
            key_refs, value_refs = obj[1], obj[2]
            return (self._marker(MARKER_DICT, len(key_refs))
                    + pack_uints(list(key_refs), ref_size)
                    + pack_uints(list(value_refs), ref_size))

        node = obj[1]
        if isinstance(node, Boolean):
            return bytes([MARKER_TRUE if node.value else MARKER_FALSE])
        if isinstance(node, Integer):
            return self._encode_int(node.value)
        if isinstance(node, Real):
            return bytes([MARKER_REAL << 4 | 3]) + _DOUBLE.pack(node.value)
        if isinstance(node, Date):
            return bytes([MARKER_DATE]) + _DOUBLE.pack(node.value)
        if isinstance(node, Data):
            return self._marker(MARKER_DATA, len(node.value)) + node.value
        if isinstance(node, String):
            if node.value.isascii():
                return self._marker(MARKER_ASCII, len(node.value)) + node.value.encode('ascii')
            encoded = node.value.encode('utf-16-be', errors='surrogatepass')
            return self._marker(MARKER_UTF16, len(encoded) // 2) + encoded
        if isinstance(node, Uid):
            width = byte_width(node.value)
            return bytes([MARKER_UID << 4 | (width - 1)]) + node.value.to_bytes(width, 'big')
        raise UnrepresentableValueError(f"Cannot encode {type(node).__name__} in a binary plist")

    @staticmethod
    def _encode_int(value: int) -> bytes:
        if 0 <= value <= 0xFFFFFFFF:
            width = byte_width(value, (1, 2, 4))
            return bytes([MARKER_INT << 4 | (width.bit_length() - 1)]) + value.to_bytes(width, 'big')
        if INT64_MIN <= value <= INT64_MAX:
            return bytes([MARKER_INT << 4 | 3]) + value.to_bytes(8, 'big', signed=True)
        if value <= UINT64_MAX:
            return bytes([MARKER_INT << 4 | 4]) + value.to_bytes(16, 'big', signed=True)
        raise UnrepresentableValueError(f"Integer out of 64-bit range: {value}")

    def _marker(self, high: int, length: int) -> bytes:
        if length < LENGTH_FOLLOWS:
            return bytes([high << 4 | length])
        if length > INT64_MAX:
            raise UnrepresentableValueError(f"Length {length} exceeds the binary plist limit")
        return bytes([high << 4 | LENGTH_FOLLOWS]) + self._encode_int(length)
