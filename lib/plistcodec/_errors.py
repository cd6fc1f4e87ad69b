"""Exception classes raised by plistcodec.

Every decode failure derives from PlistFormatError (a ValueError), so
callers that only care whether a document is readable can catch that one
class. The ``code`` attribute names the error kind and is stable across
releases. Failures of the caller's own file object (OSError) are never
wrapped.
"""


class PlistError(Exception):
    """Base class for all plistcodec errors."""

    code = 'ERR_PLIST'


class PlistFormatError(PlistError, ValueError):
    """The input is not a well-formed plist document."""

    code = 'ERR_FORMAT'


class MalformedHeaderError(PlistFormatError):
    """Bad magic or unsupported format version."""

    code = 'ERR_HEADER'


class OutOfBoundsError(PlistFormatError):
    """An offset, length or object index points past the end of the input."""

    code = 'ERR_BOUNDS'


class UnsupportedObjectTypeError(PlistFormatError):
    """A binary object marker that this codec does not handle."""

    code = 'ERR_OBJECT_TYPE'


class DuplicateKeyError(PlistFormatError):
    """A dictionary repeats a key."""

    code = 'ERR_DUP_KEY'

    def __init__(self, key: str, msg: str = ''):
        super().__init__(msg or f"Duplicate dictionary key: {key!r}")
        self.key = key


class CyclicReferenceError(PlistFormatError):
    """A binary object references itself, directly or transitively."""

    code = 'ERR_CYCLE'


class XmlSyntaxError(PlistFormatError):
    """The XML tokenizer rejected the document."""

    code = 'ERR_XML'


class ResourceLimitError(PlistFormatError):
    """Decoding would materialize more nodes than the configured budget."""

    code = 'ERR_LIMIT'


class UnrepresentableValueError(PlistError, ValueError):
    """A value cannot be written in the requested format."""

    code = 'ERR_UNREPRESENTABLE'


class TypeMismatchError(PlistError, TypeError):
    """A plist value cannot fill the requested Python shape."""

    code = 'ERR_TYPE'


class NumericRangeError(PlistError, OverflowError):
    """A number does not fit the requested numeric type."""

    code = 'ERR_RANGE'
