"""Filtering, ordering and formatting of events for API responses."""
import logging
from dataclasses import asdict
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional
from zoneinfo import ZoneInfo

from processor.models import Event, FormattedEvent, QueryParams

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DISPLAY_TIMEZONE = 'Europe/Rome'
BOUNDARY_START_OF_DAY = 'start_of_day'
BOUNDARY_NOW = 'now'


def parse_limit(raw: Any, default: int = DEFAULT_LIMIT) -> int:
    """
    Parse a result limit, falling back to the default.

    Args:
        raw: Raw query value
        default: Limit used when the value is missing, invalid or not positive

    Returns:
        Positive integer limit
    """
    try:
        limit = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return limit if limit > 0 else default


def reference_instant(now: datetime, reference_tz: tzinfo, boundary: str = BOUNDARY_START_OF_DAY) -> datetime:
    """
    Compute the earliest start a request should see.

    Args:
        now: Invocation time (timezone-aware)
        reference_tz: Serving timezone
        boundary: ``start_of_day`` keeps all of today's events, ``now``
            keeps only events that have not started yet

    Returns:
        Aware datetime used as the date filter bound
    """
    local_now = now.astimezone(reference_tz)
    if boundary == BOUNDARY_NOW:
        return local_now
    if boundary != BOUNDARY_START_OF_DAY:
        raise ValueError(f"Unknown date boundary '{boundary}'")
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)


def build_query_params(
    query: Optional[Mapping[str, Any]],
    now: datetime,
    reference_tz: tzinfo,
    boundary: str = BOUNDARY_START_OF_DAY,
    default_limit: int = DEFAULT_LIMIT
) -> QueryParams:
    """
    Build QueryParams from raw query string parameters.

    Args:
        query: Query string parameters (may be None)
        now: Invocation time, captured once per request
        reference_tz: Serving timezone
        boundary: Date filter policy
        default_limit: Limit used when none is supplied

    Returns:
        QueryParams for the pipeline
    """
    query = query or {}
    keyword = str(query.get('keyword') or '').strip().lower() or None
    return QueryParams(
        keyword=keyword,
        limit=parse_limit(query.get('limit'), default_limit),
        as_of=reference_instant(now, reference_tz, boundary)
    )


class QueryPipeline:
    """Applies date and keyword filters, sorting, limit and formatting."""

    def __init__(self, reference_tz: tzinfo, display_tz: str = DISPLAY_TIMEZONE):
        """
        Initialize the pipeline.

        Args:
            reference_tz: Frame in which the all-day midnight rule is checked
            display_tz: IANA zone for the human readable strings
        """
        self.reference_tz = reference_tz
        self.display_tz = ZoneInfo(display_tz)

    def execute(self, events: Iterable[Event], params: QueryParams) -> List[Dict[str, Any]]:
        """
        Run the full pipeline.

        Args:
            events: Current event set
            params: Query with keyword, limit and reference instant

        Returns:
            Formatted events as dictionaries
        """
        selected = self.filter_by_date(events, params.as_of)
        selected = self.filter_by_keyword(selected, params.keyword)
        selected = self.sort_events(selected)
        selected = selected[:params.limit]
        logger.debug(f"Query matched {len(selected)} events")
        return [asdict(self.format_event(event)) for event in selected]

    def filter_by_date(self, events: Iterable[Event], as_of: datetime) -> List[Event]:
        return [event for event in events if event.start >= as_of]

    def filter_by_keyword(self, events: Iterable[Event], keyword: Optional[str]) -> List[Event]:
        """Case-insensitive substring match on the summary."""
        if not keyword:
            return list(events)
        needle = keyword.lower()
        return [event for event in events if needle in event.summary.lower()]

    def sort_events(self, events: Iterable[Event]) -> List[Event]:
        # sorted() is stable, so equal starts keep document order
        return sorted(events, key=lambda event: event.start)

    def is_all_day(self, event: Event) -> bool:
        """
        All-day when there is no end, or when start and end both sit on
        midnight in the reference frame.
        """
        if event.end is None:
            return True
        start = event.start.astimezone(self.reference_tz)
        end = event.end.astimezone(self.reference_tz)
        return (
            start.hour == 0 and start.minute == 0
            and end.hour == 0 and end.minute == 0
        )

    def format_event(self, event: Event) -> FormattedEvent:
        all_day = self.is_all_day(event)
        end_formatted = None
        if event.end is not None and not all_day:
            end_formatted = self._display(event.end, with_time=True)

        return FormattedEvent(
            summary=event.summary,
            location=event.location,
            start=event.start.isoformat(),
            end=event.end.isoformat() if event.end else None,
            start_formatted=self._display(event.start, with_time=not all_day),
            end_formatted=end_formatted,
            is_all_day=all_day
        )

    def _display(self, value: datetime, with_time: bool) -> str:
        local = value.astimezone(self.display_tz)
        text = local.strftime('%d/%m/%Y')
        if with_time:
            text += local.strftime(' %H:%M')
        return text
