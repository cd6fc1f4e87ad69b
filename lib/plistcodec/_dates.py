"""Conversions between plist date offsets and calendar dates."""

import datetime
import decimal
import math
import re
from typing import Tuple

from ._errors import PlistFormatError, UnrepresentableValueError

PLIST_EPOCH = datetime.datetime(2001, 1, 1, tzinfo=datetime.timezone.utc)

_DATE_PATTERN = re.compile(
    r'(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})'
    r'T(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})'
    r'(?:\.(?P<fraction>\d+))?Z',
    re.ASCII,
)


def offset_to_datetime(offset: float) -> datetime.datetime:
    """
    Convert seconds since 2001-01-01T00:00:00Z into an aware UTC datetime.

    Raises:
        UnrepresentableValueError: If the offset is not finite or falls
            outside the years 1 to 9999
    """
    if not math.isfinite(offset):
        raise UnrepresentableValueError(f"Date offset is not finite: {offset!r}")
    try:
        return PLIST_EPOCH + datetime.timedelta(seconds=offset)
    except OverflowError:
        raise UnrepresentableValueError(f"Date offset out of calendar range: {offset!r}")


def datetime_to_offset(value: datetime.datetime) -> float:
    """
    Convert a datetime into seconds since the plist epoch.

    Naive datetimes are taken to be UTC, which is what plist dates always are.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return (value - PLIST_EPOCH).total_seconds()


def _split_offset(offset: float) -> Tuple[int, str]:
    """Split an offset into whole seconds and the decimal digits after the point."""
    exact = decimal.Decimal(repr(offset))
    whole = exact.to_integral_value(rounding=decimal.ROUND_FLOOR)
    return int(whole), format(exact - whole, 'f').partition('.')[2].rstrip('0')


def format_xml_date(offset: float) -> str:
    """
    Format a date offset the way XML plists spell dates.

    The fraction is the shortest decimal that reads back as the same float,
    so sub-microsecond precision survives a trip through XML.
    """
    # Rejects non-finite and out-of-range offsets
    offset_to_datetime(offset)
    whole, fraction = _split_offset(offset)
    value = offset_to_datetime(whole)
    text = value.strftime('%Y-%m-%dT%H:%M:%S')
    if value.year < 1000:
        # strftime does not zero-pad years on every platform
        text = f'{value.year:04d}' + text[text.index('-'):]
    if fraction:
        text += '.' + fraction
    return text + 'Z'


def parse_xml_date(text: str) -> float:
    """
    Parse an XML plist date into a date offset.

    Raises:
        PlistFormatError: If the text is not an ISO 8601 UTC timestamp
    """
    match = _DATE_PATTERN.fullmatch(text.strip())
    if match is None:
        raise PlistFormatError(f"Invalid date: {text!r}")
    fields = match.groupdict()
    fraction = fields.pop('fraction') or '0'
    try:
        value = datetime.datetime(
            *(int(fields[name]) for name in ('year', 'month', 'day', 'hour', 'minute', 'second')),
            tzinfo=datetime.timezone.utc,
        )
    except ValueError as exc:
        raise PlistFormatError(f"Invalid date: {text!r} ({exc})")
    delta = value - PLIST_EPOCH
    whole = delta.days * 86400 + delta.seconds
    return float(decimal.Decimal(whole) + decimal.Decimal('0.' + fraction))
