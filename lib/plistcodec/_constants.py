"""Format constants shared by the binary and XML codecs."""

import struct

# Binary format header and trailer
BPLIST_MAGIC = b'bplist'
BPLIST_VERSION = b'00'
BPLIST_HEADER = BPLIST_MAGIC + BPLIST_VERSION

# uint8 unused[5], uint8 sort_version, uint8 offset_int_size,
# uint8 object_ref_size, uint64 num_objects, uint64 top_object,
# uint64 offset_table_offset
TRAILER_STRUCT = struct.Struct('>5xBBBQQQ')
TRAILER_SIZE = TRAILER_STRUCT.size

# Byte widths the writer is allowed to choose for offsets and references
WRITER_WIDTHS = (1, 2, 4, 8)

# Marker bytes (high nibble selects the object type)
MARKER_FALSE = 0x08
MARKER_TRUE = 0x09
MARKER_INT = 0x1
MARKER_REAL = 0x2
MARKER_DATE = 0x33
MARKER_DATA = 0x4
MARKER_ASCII = 0x5
MARKER_UTF16 = 0x6
MARKER_UID = 0x8
MARKER_ARRAY = 0xA
MARKER_DICT = 0xD
LENGTH_FOLLOWS = 0xF

# Integer range carried by the value model
INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1
UINT64_MAX = (1 << 64) - 1

# Upper bound on the number of nodes the binary reader will materialize
# when it expands shared containers into independent copies
DEFAULT_MAX_NODES = 1 << 22

# XML output
XML_HEADER = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b'<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" '
    b'"http://www.apple.com/DTDs/PropertyList-1.0.dtd">\n'
)
XML_INDENT = b'\t'
BASE64_LINE_LENGTH = 76

# Standard XML tags mapped to their abbreviated form and back. The
# abbreviated dialect is used by Geometry Dash save files.
SHORT_TAGS = {
    'dict': 'd',
    'key': 'k',
    'string': 's',
    'integer': 'i',
    'real': 'r',
    'true': 't',
    'false': 'f',
    'array': 'a',
}
LONG_TAGS = {short: long for long, short in SHORT_TAGS.items()}
