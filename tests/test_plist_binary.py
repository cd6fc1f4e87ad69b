"""
Unit tests for plistcodec - Binary format

This test file covers round trips through the bplist00 encoding, the
writer's deduplication and width selection, and the reader's rejection of
malformed, cyclic and explosive documents. Malformed documents are built
byte by byte with build_bplist().
"""

import io
import os
import struct
import sys
import tempfile
import pytest

# Add the lib directory to the path to import plistcodec
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))) + "/lib")
import plistcodec
from plistcodec import (Array, Boolean, Data, Date, Dictionary, Integer, Real, String, Uid, PlistFormat,
                        CyclicReferenceError, DuplicateKeyError, MalformedHeaderError, OutOfBoundsError,
                        PlistFormatError, ResourceLimitError, UnsupportedObjectTypeError)
from plistcodec.binary import BinaryPlistReader, BinaryPlistWriter


@pytest.fixture
def temp_file():
    """Set up a temporary file for tests."""
    temp = tempfile.NamedTemporaryFile(delete=False)
    temp.close()
    yield temp
    # Clean up temporary files after tests
    if os.path.exists(temp.name):
        os.unlink(temp.name)


def build_bplist(objects, top=0, offset_size=1, ref_size=1):
    """Assemble a binary plist from already encoded objects."""
    body = b"bplist00"
    offsets = []
    for obj in objects:
        offsets.append(len(body))
        body += obj
    table = len(body)
    body += b"".join(offset.to_bytes(offset_size, "big") for offset in offsets)
    body += struct.pack(">5xBBBQQQ", 0, offset_size, ref_size, len(objects), top, table)
    return body


def encode(value):
    buffer = io.BytesIO()
    BinaryPlistWriter(buffer).write(value)
    return buffer.getvalue()


def sample_document():
    return Dictionary([
        ("name", String("Paws")),
        ("tags", Array([String("a"), String("b")])),
        ("lives", Integer(9)),
    ])


def test_round_trip_all_variants(temp_file):
    """Every variant survives a write and read through a file."""
    value = Dictionary([
        ("true", Boolean(True)),
        ("false", Boolean(False)),
        ("small", Integer(7)),
        ("negative", Integer(-5)),
        ("int32_max", Integer(0xFFFFFFFF)),
        ("int64_min", Integer(-2**63)),
        ("uint64_max", Integer(2**64 - 1)),
        ("real", Real(3.14159265359)),
        ("ascii", String("Hello, world!")),
        ("long_ascii", String("x" * 300)),
        ("unicode", String("héllo \U0001F431")),
        ("empty_string", String("")),
        ("date", Date(123456.5)),
        ("data", Data(b"\x00\x01\x02binary")),
        ("uid", Uid(42)),
        ("empty_array", Array()),
        ("empty_dict", Dictionary()),
        ("nested", Array([Dictionary({"inner": Array([Integer(1), Real(2.5)])})])),
    ])

    with plistcodec.File(temp_file.name, "w", fmt=PlistFormat.BINARY) as pf:
        pf.write(value)

    with plistcodec.File(temp_file.name, "r") as pf:
        read_value = pf.read()

    assert read_value == value
    assert list(read_value.keys()) == list(value.keys())
    assert read_value["uint64_max"].as_unsigned_integer() == 2**64 - 1
    assert read_value["int64_min"].as_signed_integer() == -2**63


def test_header_and_top_object():
    data = encode(sample_document())
    assert data.startswith(b"bplist00")

    reader = BinaryPlistReader(data)
    assert reader.read() == sample_document()
    # Objects are numbered children first, so the top object is the last one
    assert reader.top_object == reader.object_count - 1


def test_minimal_reference_width():
    """255 distinct integers plus their array need only one byte per reference."""
    reader = BinaryPlistReader(encode(Array(Integer(i) for i in range(255))))
    reader.read()
    assert reader.object_count == 256
    assert reader.ref_size == 1

    reader = BinaryPlistReader(encode(Array(Integer(i) for i in range(256))))
    reader.read()
    assert reader.object_count == 257
    assert reader.ref_size == 2


def test_minimal_offset_width():
    data = encode(Array([Integer(1), Integer(2)]))
    assert data[-26] == 1  # offset size byte of the trailer
    data = encode(Array([String("x" * 300), Integer(2)]))
    assert data[-26] == 2


def test_equal_strings_are_written_once():
    value = Array([String("same")] * 1000)
    reader = BinaryPlistReader(encode(value))
    result = reader.read()
    assert reader.object_count == 2
    assert len(result) == 1000
    assert all(item == String("same") for item in result)


def test_equal_containers_are_written_once_and_read_independently():
    value = Array([Array([Integer(1)]), Array([Integer(1)])])
    reader = BinaryPlistReader(encode(value))
    result = reader.read()
    assert reader.object_count == 3
    assert result == value

    result[0].append(Integer(2))
    assert len(result[1]) == 1


def test_shared_container_is_copied():
    # top array references object 1 twice
    data = build_bplist([b"\xa2\x01\x01", b"\xa1\x02", b"\x10\x05"])
    reader = BinaryPlistReader(data)
    result = reader.read()
    assert result == Array([Array([Integer(5)]), Array([Integer(5)])])
    assert result[0] is not result[1]
    assert reader.objects_parsed == 3

    result[0].append(Integer(6))
    assert result[1] == Array([Integer(5)])


def test_self_reference_is_rejected():
    with pytest.raises(CyclicReferenceError):
        BinaryPlistReader(build_bplist([b"\xa1\x00"])).read()


def test_indirect_cycle_is_rejected():
    data = build_bplist([b"\xa1\x01", b"\xd1\x02\x00", b"\x51k"])
    with pytest.raises(CyclicReferenceError):
        BinaryPlistReader(data).read()


def test_truncation_at_every_offset():
    """Every proper prefix of a document is reported as out of bounds."""
    data = encode(sample_document())
    for length in range(len(data)):
        with pytest.raises(OutOfBoundsError):
            BinaryPlistReader(data[:length]).read()


def test_bad_magic_and_version():
    with pytest.raises(MalformedHeaderError):
        BinaryPlistReader(b"xplist00" + bytes(40)).read()
    with pytest.raises(MalformedHeaderError):
        BinaryPlistReader(b"bplist01" + bytes(40)).read()


def test_reference_out_of_range():
    with pytest.raises(OutOfBoundsError):
        BinaryPlistReader(build_bplist([b"\xa1\x05"])).read()


def test_length_past_object_area():
    # ASCII string claiming 10 characters with only 2 present
    with pytest.raises(OutOfBoundsError):
        BinaryPlistReader(build_bplist([b"\x5aab"])).read()


def test_top_object_outside_table():
    with pytest.raises(OutOfBoundsError):
        BinaryPlistReader(build_bplist([b"\x08"], top=3)).read()


def test_duplicate_key_is_rejected():
    data = build_bplist([b"\xd2\x01\x01\x02\x02", b"\x51a", b"\x10\x01"])
    with pytest.raises(DuplicateKeyError) as excinfo:
        BinaryPlistReader(data).read()
    assert excinfo.value.key == "a"


def test_non_string_key_is_rejected():
    with pytest.raises(PlistFormatError):
        BinaryPlistReader(build_bplist([b"\xd1\x01\x01", b"\x10\x01"])).read()


@pytest.mark.parametrize("marker", [b"\x00", b"\x0f", b"\x70", b"\xc0", b"\x15\x00"])
def test_unsupported_markers(marker):
    with pytest.raises(UnsupportedObjectTypeError):
        BinaryPlistReader(build_bplist([marker + bytes(16)])).read()


def test_integer_widths():
    """1, 2 and 4 byte integers are unsigned; 8 and 16 byte integers are signed."""
    cases = [
        (b"\x10\xff", 255),
        (b"\x11\xff\xff", 65535),
        (b"\x12\xff\xff\xff\xff", 4294967295),
        (b"\x13" + b"\xff" * 8, -1),
        (b"\x14" + (2**63).to_bytes(16, "big", signed=True), 2**63),
    ]
    for encoded, expected in cases:
        assert BinaryPlistReader(build_bplist([encoded])).read() == Integer(expected)


def test_unsigned_64_bit_fidelity():
    value = Integer(2**63)
    data = encode(value)
    # written with the 16 byte encoding
    assert data[8] == 0x14
    result = BinaryPlistReader(data).read()
    assert result.as_unsigned_integer() == 2**63
    assert result.as_signed_integer() is None


def test_128_bit_integer_out_of_range():
    encoded = b"\x14" + (2**64).to_bytes(16, "big", signed=True)
    with pytest.raises(PlistFormatError):
        BinaryPlistReader(build_bplist([encoded])).read()


def test_single_precision_real_and_uid():
    assert BinaryPlistReader(build_bplist([b"\x22" + struct.pack(">f", 1.5)])).read() == Real(1.5)
    assert BinaryPlistReader(build_bplist([b"\x81\x01\x00"])).read() == Uid(256)


def test_odd_offset_width():
    """Offset tables with 3 byte entries are read through the column fold."""
    data = build_bplist([b"\xa2\x01\x02", b"\x51x", b"\x09"], offset_size=3)
    assert BinaryPlistReader(data).read() == Array([String("x"), Boolean(True)])


def test_expansion_budget():
    """A chain of arrays that each reference the previous one twice is refused."""
    objects = [b"\x10\x01"]
    for index in range(1, 41):
        objects.append(bytes([0xA2, index - 1, index - 1]))
    data = build_bplist(objects, top=40)
    with pytest.raises(ResourceLimitError):
        BinaryPlistReader(data).read()


def test_custom_node_budget():
    data = build_bplist([b"\xa2\x01\x01", b"\xa1\x02", b"\x10\x05"])
    with pytest.raises(ResourceLimitError):
        BinaryPlistReader(data, max_nodes=4).read()
    assert len(plistcodec.loads(data, max_nodes=5)) == 2


def test_read_debug(temp_file):
    with plistcodec.File(temp_file.name, "w", fmt=PlistFormat.BINARY) as pf:
        pf.write(Array([Integer(5)]))

    with plistcodec.File(temp_file.name, "r") as pf:
        lines = list(pf.read_debug())

    assert lines[0] == "bplist00 objects=2 top=1 offset_size=1 ref_size=1 table=12"
    assert lines[1].split() == ["0", "@8", "0x10", "Integer(5)"]
    assert lines[2].split() == ["1", "@10", "0xa1", "array[1]", "->", "0"]
