"""Line-oriented parser that extracts events from an ICS document."""
import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from processor.date_parser import DateValueParser
from processor.exceptions import DateParseFailure, MalformedEvent
from processor.models import Event

logger = logging.getLogger(__name__)


class LineKind(Enum):
    """Kinds of ICS lines the parser reacts to."""
    BEGIN_EVENT = 'begin_event'
    END_EVENT = 'end_event'
    SUMMARY = 'summary'
    DTSTART = 'dtstart'
    DTEND = 'dtend'
    LOCATION = 'location'
    OTHER = 'other'


class ParserState(Enum):
    OUTSIDE_EVENT = 'outside_event'
    INSIDE_EVENT = 'inside_event'


def classify_line(line: str) -> LineKind:
    """
    Resolve the kind of a stripped ICS line.

    Args:
        line: One line of the document with surrounding whitespace removed

    Returns:
        LineKind for the line
    """
    if line == 'BEGIN:VEVENT':
        return LineKind.BEGIN_EVENT
    if line == 'END:VEVENT':
        return LineKind.END_EVENT
    if line.startswith('SUMMARY:'):
        return LineKind.SUMMARY
    if line.startswith('DTSTART'):
        return LineKind.DTSTART
    if line.startswith('DTEND'):
        return LineKind.DTEND
    if line.startswith('LOCATION:'):
        return LineKind.LOCATION
    return LineKind.OTHER


class EventBuilder:
    """Collects the properties of the VEVENT block being scanned."""

    def __init__(self):
        self.summary: Optional[str] = None
        self.start: Optional[datetime] = None
        self.end: Optional[datetime] = None
        self.location: Optional[str] = None

    def build(self) -> Event:
        if not self.summary:
            raise MalformedEvent('VEVENT without SUMMARY')
        if self.start is None:
            raise MalformedEvent(f"VEVENT '{self.summary}' without a valid DTSTART")
        return Event(
            summary=self.summary,
            start=self.start,
            end=self.end,
            location=self.location
        )


class FeedParser:
    """Parser turning ICS text into an ordered list of events."""

    def __init__(self, date_parser: Optional[DateValueParser] = None):
        """
        Initialize the feed parser.

        Args:
            date_parser: Parser used for DTSTART/DTEND lines
        """
        self.date_parser = date_parser or DateValueParser()

    def parse(self, ics_text: str, not_before: Optional[datetime] = None) -> List[Event]:
        """
        Parse all well-formed events of an ICS document.

        Args:
            ics_text: Full ICS document
            not_before: If given, events starting before this instant are
                skipped early; the query stage applies the same filter

        Returns:
            Events in document order
        """
        events = []
        dropped = 0
        state = ParserState.OUTSIDE_EVENT
        builder = None

        for raw_line in ics_text.split('\n'):
            line = raw_line.strip()
            kind = classify_line(line)

            if kind is LineKind.BEGIN_EVENT:
                if state is ParserState.INSIDE_EVENT:
                    logger.debug("Unterminated VEVENT discarded")
                    dropped += 1
                builder = EventBuilder()
                state = ParserState.INSIDE_EVENT
                continue

            if state is ParserState.OUTSIDE_EVENT:
                continue

            if kind is LineKind.END_EVENT:
                try:
                    event = builder.build()
                except MalformedEvent as e:
                    logger.debug(f"Dropping malformed event: {e}")
                    dropped += 1
                else:
                    if not_before is None or event.start >= not_before:
                        events.append(event)
                builder = None
                state = ParserState.OUTSIDE_EVENT
            elif kind is LineKind.SUMMARY:
                builder.summary = line[len('SUMMARY:'):]
            elif kind is LineKind.LOCATION:
                builder.location = line[len('LOCATION:'):] or None
            elif kind is LineKind.DTSTART:
                builder.start = self._parse_date(line) or builder.start
            elif kind is LineKind.DTEND:
                builder.end = self._parse_date(line) or builder.end

        logger.info(
            f"Parsed {len(events)} events ({dropped} malformed blocks dropped)"
        )
        return events

    def _parse_date(self, line: str) -> Optional[datetime]:
        try:
            return self.date_parser.parse(line).value
        except DateParseFailure as e:
            logger.debug(f"Dropping date field: {e}")
            return None
