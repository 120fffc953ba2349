"""Parser for ICS DTSTART/DTEND property lines.

Values are normalized to timezone-aware datetimes:

* ``20250130T090000Z`` is built directly in UTC.
* ``20250130T090000`` (with or without a ``TZID`` parameter) is read as
  wall-clock time in the server's reference frame.
* ``20250130`` (``VALUE=DATE``) is midnight of that day in the reference frame.

Known limitation: zoned values are not converted with DST-correct zone rules.
The reference frame is a fixed UTC offset, and ``TZID`` values are mapped onto
it by a zone resolver. ``Europe/Rome`` is the only zone the built-in resolver
recognizes; any other zone falls back to the same reference frame.
"""
import logging
from datetime import datetime, timezone, tzinfo
from typing import Optional

from processor.exceptions import DateParseFailure
from processor.models import ParsedDate

logger = logging.getLogger(__name__)

MIN_PLAUSIBLE_YEAR = 2021


def local_reference_tz() -> tzinfo:
    """Fixed-offset tzinfo matching the process's current local offset."""
    return datetime.now().astimezone().tzinfo


class LocalFrameZoneResolver:
    """Maps TZID names onto a single fixed-offset reference frame."""

    KNOWN_ZONES = frozenset({'Europe/Rome'})

    def __init__(self, reference_tz: tzinfo):
        self.reference_tz = reference_tz

    def resolve(self, tzid: str) -> tzinfo:
        if tzid not in self.KNOWN_ZONES:
            logger.debug(f"Unrecognized TZID '{tzid}', using reference frame")
        return self.reference_tz


class DateValueParser:
    """Converts a single ``NAME[;PARAMS]:VALUE`` line into an instant."""

    def __init__(
        self,
        reference_tz: Optional[tzinfo] = None,
        zone_resolver: Optional[LocalFrameZoneResolver] = None,
        min_year: int = MIN_PLAUSIBLE_YEAR
    ):
        """
        Initialize the date parser.

        Args:
            reference_tz: Frame for floating and zoned values (default: the
                process's local offset)
            zone_resolver: Resolver for ``TZID`` parameters
            min_year: Earliest year accepted as a real event date
        """
        self.reference_tz = reference_tz or local_reference_tz()
        self.zone_resolver = zone_resolver or LocalFrameZoneResolver(self.reference_tz)
        self.min_year = min_year

    def parse(self, line: str) -> ParsedDate:
        """
        Parse a DTSTART/DTEND line.

        Args:
            line: Raw property line, e.g. ``DTSTART;TZID=Europe/Rome:20250130T090000``

        Returns:
            ParsedDate with the instant and whether the value was date-only

        Raises:
            DateParseFailure: If the value is too short, non-numeric or
                outside the plausible year range
        """
        name, sep, value = line.partition(':')
        if not sep:
            raise DateParseFailure(line, 'missing value separator')

        value = value.strip()
        if len(value) < 8:
            raise DateParseFailure(line, 'value too short')

        is_utc = value.endswith('Z')
        tzid = self._extract_tzid(name)

        try:
            if 'T' in value:
                parsed = self._parse_datetime(value.replace('Z', ''), is_utc, tzid)
                is_date_only = False
            else:
                parsed = self._parse_date(value)
                is_date_only = True
        except ValueError as e:
            raise DateParseFailure(line, str(e)) from e

        if parsed.year < self.min_year:
            raise DateParseFailure(line, f'implausible year {parsed.year}')

        return ParsedDate(value=parsed, is_date_only=is_date_only)

    def _extract_tzid(self, name: str) -> Optional[str]:
        for param in name.split(';')[1:]:
            key, _, param_value = param.partition('=')
            if key.upper() == 'TZID':
                return param_value.strip('"')
        return None

    def _parse_datetime(self, value: str, is_utc: bool, tzid: Optional[str]) -> datetime:
        if len(value) < 15:
            raise ValueError('date-time value too short')

        year = int(value[0:4])
        month = int(value[4:6])
        day = int(value[6:8])
        hour = int(value[9:11])
        minute = int(value[11:13])
        second = int(value[13:15])

        if is_utc:
            tz = timezone.utc
        elif tzid:
            tz = self.zone_resolver.resolve(tzid)
        else:
            tz = self.reference_tz

        return datetime(year, month, day, hour, minute, second, tzinfo=tz)

    def _parse_date(self, value: str) -> datetime:
        year = int(value[0:4])
        month = int(value[4:6])
        day = int(value[6:8])
        return datetime(year, month, day, tzinfo=self.reference_tz)
