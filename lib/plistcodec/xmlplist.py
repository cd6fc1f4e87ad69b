"""
XML property list reader and writer.

The reader consumes start/end/text events from expat and builds the tree
with an explicit stack of open containers. Both the standard tag set
(``dict``, ``key``, ``string``, ...) and the abbreviated one used by
Geometry Dash (``d``, ``k``, ``s``, ...) are understood.
"""

import base64
import binascii
import logging
import math
import re
from typing import BinaryIO, Iterator, List, Optional, Tuple
from xml.parsers.expat import ExpatError, ParserCreate
from xml.sax.saxutils import escape

from ._constants import BASE64_LINE_LENGTH, LONG_TAGS, SHORT_TAGS, XML_HEADER, XML_INDENT
from ._dates import format_xml_date, parse_xml_date
from ._errors import PlistFormatError, UnrepresentableValueError, XmlSyntaxError
from .value import Array, Boolean, Data, Date, Dictionary, Integer, Real, String, Uid, Value

logger = logging.getLogger(__name__)

# Keyed archives spell a UID in XML as a one-entry dictionary; reading
# them back as Uid is opt-in
UID_KEY = 'CF$UID'

LEAF_TAGS = frozenset(('key', 'string', 'integer', 'real', 'true', 'false', 'date', 'data'))
CONTAINER_TAGS = frozenset(('array', 'dict'))

_CHUNK_SIZE = 1 << 16

_INTEGER_PATTERN = re.compile(r'[+-]?(?:0[xX][0-9a-fA-F]+|[0-9]+)', re.ASCII)
_REAL_PATTERN = re.compile(
    r'[+-]?(?:(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf(?:inity)?|nan)',
    re.ASCII | re.IGNORECASE,
)
_CONTROL_CHARS = re.compile('[\x00-\x08\x0b\x0c\x0e-\x1f]')
_ENTITIES = {'"': '&quot;', "'": '&apos;', '\r': '&#13;'}


def _refuse_entity(*args):
    raise PlistFormatError("XML entity declarations are not supported in plist files")


def iter_events(data: bytes) -> Iterator[Tuple[str, str, int]]:
    """
    Tokenize an XML document.

    Yields:
        Tuple[str, str, int]: (kind, payload, line) where kind is 'start'
        (payload = tag name), 'end' (tag name) or 'text' (character data)

    Raises:
        XmlSyntaxError: If expat rejects the document
    """
    parser = ParserCreate()
    parser.buffer_text = True
    events: List[Tuple[str, str, int]] = []
    parser.StartElementHandler = lambda name, attrs: events.append(('start', name, parser.CurrentLineNumber))
    parser.EndElementHandler = lambda name: events.append(('end', name, parser.CurrentLineNumber))
    parser.CharacterDataHandler = lambda text: events.append(('text', text, parser.CurrentLineNumber))
    parser.EntityDeclHandler = _refuse_entity

    for start in range(0, len(data) + 1, _CHUNK_SIZE):
        chunk = data[start:start + _CHUNK_SIZE]
        try:
            parser.Parse(chunk, start + _CHUNK_SIZE > len(data))
        except ExpatError as exc:
            raise XmlSyntaxError(f"Malformed XML: {exc}")
        yield from events
        events.clear()


def parse_integer(text: str) -> int:
    """Parse a decimal (or 0x-prefixed hexadecimal) plist integer."""
    text = text.strip()
    if not _INTEGER_PATTERN.fullmatch(text):
        raise PlistFormatError(f"Invalid integer: {text!r}")
    sign = -1 if text.startswith('-') else 1
    digits = text.lstrip('+-')
    if digits[:2] in ('0x', '0X'):
        return sign * int(digits[2:], 16)
    return sign * int(digits)


def format_real(value: float) -> str:
    if math.isnan(value):
        return 'nan'
    return repr(value)


class XmlPlistReader:
    """
    Decode an XML plist.

    The optional ``<plist>`` root element must hold exactly one value.
    Dictionaries alternate ``<key>`` elements and values; a key without a
    value, a value without a key and repeated keys are errors.

    With ``keyed_archive_uids`` set, one-entry ``{CF$UID: <integer>}``
    dictionaries are read as ``Uid`` markers instead of dictionaries.
    """

    def __init__(self, data: bytes, keyed_archive_uids: bool = False):
        self.data = bytes(data)
        self.keyed_archive_uids = keyed_archive_uids

    def read(self) -> Value:
        """
        Decode the document and return its top value.

        Raises:
            XmlSyntaxError: If the markup is malformed
            DuplicateKeyError: If a dictionary repeats a key
            PlistFormatError: For unknown tags and misplaced keys, values or text
        """
        # Each frame is [container, pending key]
        stack: List[list] = []
        root: Optional[Value] = None
        seen_plist = False
        leaf_tag: Optional[str] = None
        text: List[str] = []

        # expat insists on the XML declaration being the very first thing
        for kind, payload, line in iter_events(self.data.lstrip()):
            if kind == 'text':
                if leaf_tag is not None:
                    text.append(payload)
                elif payload.strip():
                    raise PlistFormatError(f"Unexpected text {payload.strip()[:20]!r} at line {line}")
                continue

            tag = LONG_TAGS.get(payload, payload)
            if kind == 'start':
                if leaf_tag is not None:
                    raise PlistFormatError(f"Element <{payload}> inside <{leaf_tag}> at line {line}")
                if tag == 'plist':
                    if seen_plist or stack or root is not None:
                        raise PlistFormatError(f"Unexpected <plist> at line {line}")
                    seen_plist = True
                elif tag in CONTAINER_TAGS:
                    container = Array() if tag == 'array' else Dictionary()
                    root = self._add(stack, root, container, line)
                    stack.append([container, None])
                elif tag in LEAF_TAGS:
                    leaf_tag = tag
                    text = []
                else:
                    raise PlistFormatError(f"Unknown tag <{payload}> at line {line}")
                continue

            # kind == 'end'; expat has already matched it with its start tag
            if leaf_tag is not None:
                content = ''.join(text)
                leaf_tag = None
                if tag == 'key':
                    self._set_key(stack, content, line)
                else:
                    root = self._add(stack, root, self._leaf(tag, content, line), line)
            elif tag in CONTAINER_TAGS:
                container, pending_key = stack.pop()
                if pending_key is not None:
                    raise PlistFormatError(f"Key {pending_key!r} has no value at line {line}")
                if self.keyed_archive_uids and isinstance(container, Dictionary):
                    self._collapse_uid(stack, container)

        if root is None:
            raise PlistFormatError("Document contains no plist value")
        if self.keyed_archive_uids and isinstance(root, Dictionary) and self._uid_of(root) is not None:
            root = Uid(self._uid_of(root))
        logger.debug("decoded %s from %d lines of XML", root.kind, line)
        return root

    @staticmethod
    def _add(stack: List[list], root: Optional[Value], value: Value, line: int) -> Optional[Value]:
        if not stack:
            if root is not None:
                raise PlistFormatError(f"More than one top-level value at line {line}")
            return value
        frame = stack[-1]
        container = frame[0]
        if isinstance(container, Array):
            container.append(value)
        else:
            if frame[1] is None:
                raise PlistFormatError(f"Dictionary value without a key at line {line}")
            container.insert(frame[1], value)
            frame[1] = None
        return root

    @staticmethod
    def _set_key(stack: List[list], key: str, line: int):
        if not stack or not isinstance(stack[-1][0], Dictionary):
            raise PlistFormatError(f"Key {key!r} outside a dictionary at line {line}")
        if stack[-1][1] is not None:
            raise PlistFormatError(f"Key {stack[-1][1]!r} has no value at line {line}")
        stack[-1][1] = key

    @staticmethod
    def _uid_of(dictionary: Dictionary) -> Optional[int]:
        if len(dictionary) != 1 or UID_KEY not in dictionary:
            return None
        return dictionary[UID_KEY].as_unsigned_integer()

    def _collapse_uid(self, stack: List[list], dictionary: Dictionary):
        """Replace a just-closed {CF$UID: n} dictionary with Uid(n) in its parent."""
        number = self._uid_of(dictionary)
        if number is None or not stack:
            return
        container = stack[-1][0]
        if isinstance(container, Array):
            container.value[-1] = Uid(number)
        else:
            key = next(reversed(container.value))
            container.value[key] = Uid(number)

    @staticmethod
    def _leaf(tag: str, content: str, line: int) -> Value:
        if tag == 'string':
            return String(content)
        if tag == 'integer':
            try:
                return Integer(parse_integer(content))
            except UnrepresentableValueError:
                raise PlistFormatError(f"Integer out of 64-bit range at line {line}")
        if tag == 'real':
            if not _REAL_PATTERN.fullmatch(content.strip()):
                raise PlistFormatError(f"Invalid real {content.strip()!r} at line {line}")
            return Real(float(content.strip()))
        if tag in ('true', 'false'):
            if content.strip():
                raise PlistFormatError(f"<{tag}/> must be empty at line {line}")
            return Boolean(tag == 'true')
        if tag == 'date':
            return Date(parse_xml_date(content))
        # data: line-wrapped base64 with arbitrary whitespace
        try:
            return Data(base64.b64decode(''.join(content.split()), validate=True))
        except binascii.Error as exc:
            raise PlistFormatError(f"Invalid base64 data at line {line}: {exc}")


class XmlPlistWriter:
    """
    Encode a Value tree as an XML plist.

    Containers are written with one element per line, indented with tabs.
    Dictionary keys keep their stored order.
    """

    def __init__(self, file: BinaryIO, indent: bytes = XML_INDENT,
                 short_tags: bool = False, write_header: bool = True):
        """
        Initialize an XmlPlistWriter.

        Args:
            file: The file object to write to
            indent: Indentation unit for nested elements
            short_tags: Use the abbreviated tag set (d, k, s, i, r, t, f, a)
            write_header: Write the XML declaration and DOCTYPE
        """
        self.file = file
        self.indent = indent
        self.short_tags = short_tags
        self.write_header = write_header

    def _tag(self, name: str) -> str:
        if self.short_tags:
            return SHORT_TAGS.get(name, name)
        return name

    def _writeln(self, level: int, line: str):
        try:
            encoded = line.encode('utf-8')
        except UnicodeEncodeError:
            raise UnrepresentableValueError("Strings with lone surrogates cannot be written as XML")
        self.file.write(self.indent * level + encoded + b'\n')

    def _simple(self, level: int, name: str, content: Optional[str] = None):
        tag = self._tag(name)
        if content is None:
            self._writeln(level, f'<{tag}/>')
        else:
            self._writeln(level, f'<{tag}>{content}</{tag}>')

    @staticmethod
    def _escape(text: str) -> str:
        if _CONTROL_CHARS.search(text):
            raise UnrepresentableValueError("Strings with control characters cannot be written as XML")
        return escape(text, _ENTITIES)

    def write(self, value: Value):
        """
        Write a complete XML plist for ``value``.

        Raises:
            UnrepresentableValueError: For strings XML cannot carry, dates
                outside the calendar range, Uid markers, or nodes that are
                not Values
        """
        if self.write_header:
            self.file.write(XML_HEADER)
        self.file.write(b'<plist version="1.0">\n')

        # Entries are ('value', node, level), ('key', name, level)
        # or ('close', tag, level)
        stack: List[Tuple[str, object, int]] = [('value', value, 0)]
        while stack:
            action, item, level = stack.pop()
            if action == 'close':
                self._writeln(level, f'</{self._tag(item)}>')
            elif action == 'key':
                self._simple(level, 'key', self._escape(item))
            elif isinstance(item, Array):
                if not item.value:
                    self._simple(level, 'array')
                    continue
                self._writeln(level, f'<{self._tag("array")}>')
                stack.append(('close', 'array', level))
                stack.extend(('value', child, level + 1) for child in reversed(item.value))
            elif isinstance(item, Dictionary):
                if not item.value:
                    self._simple(level, 'dict')
                    continue
                self._writeln(level, f'<{self._tag("dict")}>')
                stack.append(('close', 'dict', level))
                for key, child in reversed(list(item.value.items())):
                    stack.append(('value', child, level + 1))
                    stack.append(('key', key, level + 1))
            elif isinstance(item, Uid):
                raise UnrepresentableValueError(f"Uid({item.value}) has no XML form; write it as a binary plist")
            else:
                self._write_leaf(item, level)

        self.file.write(b'</plist>')
        logger.debug("wrote XML plist with %s tags", "short" if self.short_tags else "standard")

    def _write_leaf(self, item: object, level: int):
        if isinstance(item, String):
            self._simple(level, 'string', self._escape(item.value))
        elif isinstance(item, Boolean):
            self._simple(level, 'true' if item.value else 'false')
        elif isinstance(item, Integer):
            self._simple(level, 'integer', str(item.value))
        elif isinstance(item, Real):
            self._simple(level, 'real', format_real(item.value))
        elif isinstance(item, Date):
            self._simple(level, 'date', format_xml_date(item.value))
        elif isinstance(item, Data):
            self._write_data(item.value, level)
        else:
            raise UnrepresentableValueError(f"Cannot encode {type(item).__name__} in an XML plist")

    def _write_data(self, data: bytes, level: int):
        self._writeln(level, '<data>')
        width = len(self.indent.replace(b'\t', b' ' * 8) * level)
        max_line_length = max(16, BASE64_LINE_LENGTH - width)
        chunk_size = max_line_length // 4 * 3
        for start in range(0, len(data), chunk_size):
            line = binascii.b2a_base64(data[start:start + chunk_size], newline=False)
            self._writeln(level, line.decode('ascii'))
        self._writeln(level, '</data>')
