"""Process-lifetime cache of parsed calendar events."""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence

from processor.exceptions import FetchExhausted, SourceUnavailable
from processor.models import CacheEntry, Event

logger = logging.getLogger(__name__)

Loader = Callable[[Optional[datetime]], Sequence[Event]]


class CacheTier(Enum):
    """How a lookup was served."""
    FRESH = 'fresh'
    STALE = 'stale'
    FETCHED = 'fetched'
    FALLBACK = 'fallback'


@dataclass(frozen=True)
class CacheLookup:
    """Events served by the cache and where they came from."""
    events: List[Event]
    tier: CacheTier
    cached: bool


class FreshnessCache:
    """
    Three-tier cache over a single immutable CacheEntry.

    Entries younger than the freshness window are served as is. Entries
    younger than the stale window are served while one background refresh
    runs. Older or missing entries are reloaded synchronously, falling back
    to the old entry when the upstream cannot be reached.
    """

    def __init__(
        self,
        loader: Loader,
        freshness_window: float = 300,
        stale_window: float = 900,
        clock: Callable[[], float] = time.monotonic,
        slow_fetch_threshold: Optional[float] = 3.0,
        slow_fetch_factor: float = 2.0
    ):
        """
        Initialize the cache.

        Args:
            loader: Callable fetching and parsing the feed; receives the
                early-filter instant and raises FetchExhausted on failure
            freshness_window: Seconds an entry is served without refreshing
            stale_window: Seconds an entry may be served at all before a
                synchronous reload is required
            clock: Monotonic time source in seconds
            slow_fetch_threshold: Fetches slower than this many seconds get
                longer windows (None disables)
            slow_fetch_factor: Window multiplier for slow fetches
        """
        if stale_window < freshness_window:
            raise ValueError("stale_window must be >= freshness_window")
        self.loader = loader
        self.freshness_window = freshness_window
        self.stale_window = stale_window
        self.clock = clock
        self.slow_fetch_threshold = slow_fetch_threshold
        self.slow_fetch_factor = slow_fetch_factor

        self._entry: Optional[CacheEntry] = None
        self._refresh_lock = threading.Lock()
        self._refresh_in_flight = False
        self._refresh_thread: Optional[threading.Thread] = None

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_in_flight

    def get(self, not_before: Optional[datetime] = None) -> CacheLookup:
        """
        Return the current event set, refreshing as the entry's age demands.

        Args:
            not_before: Early-filter instant handed to the loader

        Returns:
            CacheLookup with the events and the tier that served them

        Raises:
            SourceUnavailable: If loading failed and nothing is cached
        """
        entry = self._entry
        now = self.clock()

        if entry is not None:
            age = entry.age(now)
            if age < entry.freshness_window:
                logger.debug(f"Serving fresh cache (age {age:.0f}s)")
                return CacheLookup(list(entry.events), CacheTier.FRESH, cached=True)
            if age < entry.stale_window:
                logger.info(f"Serving stale cache (age {age:.0f}s), refreshing in background")
                self.trigger_refresh(not_before)
                return CacheLookup(list(entry.events), CacheTier.STALE, cached=False)

        try:
            new_entry = self._load(not_before)
        except FetchExhausted as e:
            if entry is None:
                raise SourceUnavailable(e) from e
            logger.warning(
                "Using expired cache data as fallback",
                extra={'age_seconds': round(entry.age(now), 1)}
            )
            return CacheLookup(list(entry.events), CacheTier.FALLBACK, cached=False)

        return CacheLookup(list(new_entry.events), CacheTier.FETCHED, cached=True)

    def trigger_refresh(self, not_before: Optional[datetime] = None) -> bool:
        """
        Start a background refresh unless one is already running.

        Args:
            not_before: Early-filter instant handed to the loader

        Returns:
            True if a refresh was started
        """
        with self._refresh_lock:
            if self._refresh_in_flight:
                logger.debug("Background refresh already in flight")
                return False
            self._refresh_in_flight = True

        thread = threading.Thread(
            target=self._background_refresh,
            args=(not_before,),
            name='calendar-refresh',
            daemon=True
        )
        self._refresh_thread = thread
        thread.start()
        return True

    def wait_for_refresh(self, timeout: Optional[float] = None) -> None:
        """Block until the most recent background refresh has finished."""
        thread = self._refresh_thread
        if thread is not None:
            thread.join(timeout)

    def _background_refresh(self, not_before: Optional[datetime]) -> None:
        try:
            self._load(not_before)
        except Exception as e:
            logger.error(
                f"Background refresh failed: {e}",
                extra={'error_type': type(e).__name__}
            )
        finally:
            with self._refresh_lock:
                self._refresh_in_flight = False

    def _load(self, not_before: Optional[datetime]) -> CacheEntry:
        started = self.clock()
        events = self.loader(not_before)
        finished = self.clock()
        duration = finished - started

        freshness, stale = self.freshness_window, self.stale_window
        if self.slow_fetch_threshold is not None and duration > self.slow_fetch_threshold:
            freshness *= self.slow_fetch_factor
            stale *= self.slow_fetch_factor
            logger.info(f"Slow fetch ({duration:.1f}s), extending cache windows")

        entry = CacheEntry(
            events=tuple(events),
            fetched_at=finished,
            freshness_window=freshness,
            stale_window=stale,
            fetch_duration=duration
        )
        self._entry = entry
        logger.info(f"Cache updated with {len(entry.events)} events")
        return entry
