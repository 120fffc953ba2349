"""Error types raised while fetching, parsing and serving the calendar feed."""
from typing import List, Optional


class CalendarFeedError(Exception):
    """Base class for calendar feed errors."""


class DateParseFailure(CalendarFeedError):
    """A DTSTART/DTEND value could not be turned into an instant."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"Cannot parse date from '{line}': {reason}")
        self.line = line
        self.reason = reason


class MalformedEvent(CalendarFeedError):
    """A VEVENT block lacks a summary or a usable start."""


class FetchAttemptFailure(CalendarFeedError):
    """A single fetch strategy failed."""

    def __init__(self, label: str, reason: str, timed_out: bool = False):
        super().__init__(f"{label} failed: {reason}")
        self.label = label
        self.reason = reason
        self.timed_out = timed_out


class FetchExhausted(CalendarFeedError):
    """Every fetch strategy failed."""

    def __init__(self, failures: List[FetchAttemptFailure]):
        self.failures = list(failures)
        self.last_error: Optional[FetchAttemptFailure] = (
            self.failures[-1] if self.failures else None
        )
        detail = str(self.last_error) if self.last_error else 'no strategies configured'
        super().__init__(
            f"All {len(self.failures)} fetch attempts failed. Last error: {detail}"
        )

    @property
    def timed_out(self) -> bool:
        """True when every attempt ended in a timeout."""
        return bool(self.failures) and all(f.timed_out for f in self.failures)


class SourceUnavailable(CalendarFeedError):
    """The feed could not be fetched and no cached events exist."""

    def __init__(self, cause: FetchExhausted):
        super().__init__(f"Calendar source unavailable: {cause}")
        self.cause = cause

    @property
    def timed_out(self) -> bool:
        return self.cause.timed_out
