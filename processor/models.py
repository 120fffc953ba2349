"""Data models for calendar feed processing."""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class Event:
    """Event extracted from one VEVENT block of the feed."""
    summary: str
    start: datetime
    end: Optional[datetime] = None
    location: Optional[str] = None


@dataclass(frozen=True)
class ParsedDate:
    """Result of parsing a DTSTART/DTEND property line."""
    value: datetime
    is_date_only: bool


@dataclass(frozen=True)
class FetchStrategy:
    """One attempt configuration for retrieving the feed."""
    timeout: float
    headers: Dict[str, str]
    label: str

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError(f"Strategy '{self.label}' needs a positive timeout")


@dataclass(frozen=True)
class CacheEntry:
    """Immutable snapshot of the most recently parsed event list."""
    events: Tuple[Event, ...]
    fetched_at: float
    freshness_window: float
    stale_window: float
    fetch_duration: float = 0.0

    def __post_init__(self):
        if self.stale_window < self.freshness_window:
            raise ValueError("stale_window must be >= freshness_window")

    def age(self, now: float) -> float:
        return now - self.fetched_at


@dataclass(frozen=True)
class QueryParams:
    """Caller query with the request's reference instant."""
    keyword: Optional[str]
    limit: int
    as_of: datetime


@dataclass
class FormattedEvent:
    """Client-facing event representation."""
    summary: str
    location: Optional[str]
    start: str
    end: Optional[str]
    start_formatted: str
    end_formatted: Optional[str]
    is_all_day: bool
