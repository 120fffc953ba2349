"""Resilient retrieval of a remote ICS calendar feed."""
import concurrent.futures
import logging
import threading
import time
from typing import List, Optional, Sequence

import requests
from bs4 import BeautifulSoup

from processor.exceptions import FetchAttemptFailure, FetchExhausted
from processor.models import FetchStrategy

logger = logging.getLogger(__name__)

MIN_BODY_LENGTH = 50
CHUNK_SIZE = 8192
CALENDAR_MARKERS = ('BEGIN:VCALENDAR', 'BEGIN:VEVENT')

_ACCEPT = 'text/calendar,text/plain,*/*'
_BROWSER_UA = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/124.0 Safari/537.36'
)

DEFAULT_STRATEGIES = (
    FetchStrategy(
        timeout=5,
        headers={
            'User-Agent': 'Calendar-Parser/1.0',
            'Accept': _ACCEPT,
            'Connection': 'close'
        },
        label='Fast fetch (5s)'
    ),
    FetchStrategy(
        timeout=15,
        headers={
            'User-Agent': _BROWSER_UA,
            'Accept': _ACCEPT,
            'Accept-Encoding': 'gzip, deflate'
        },
        label='Standard fetch (15s)'
    ),
    FetchStrategy(
        timeout=25,
        headers={
            'User-Agent': _BROWSER_UA,
            'Accept': '*/*',
            'Accept-Encoding': 'gzip, deflate',
            'Cache-Control': 'no-cache'
        },
        label='Extended fetch (25s)'
    ),
)


class ResilientFetcher:
    """Fetches an ICS feed, escalating timeouts and headers on failure."""

    def __init__(self, strategies: Sequence[FetchStrategy] = DEFAULT_STRATEGIES):
        """
        Initialize the fetcher.

        Args:
            strategies: Attempt configurations, weakest timeout first
        """
        self.strategies = tuple(strategies)
        self.last_duration: Optional[float] = None

    def fetch(self, url: str) -> str:
        """
        Retrieve the ICS document.

        Args:
            url: Feed URL

        Returns:
            Raw ICS text from the first successful strategy

        Raises:
            FetchExhausted: If every strategy failed
        """
        failures: List[FetchAttemptFailure] = []
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(len(self.strategies), 1),
            thread_name_prefix='feed-fetch'
        )

        try:
            for attempt, strategy in enumerate(self.strategies, start=1):
                logger.info(
                    f"Attempting {strategy.label} "
                    f"(attempt {attempt}/{len(self.strategies)})"
                )
                started = time.monotonic()
                try:
                    body = self._attempt(executor, url, strategy)
                except FetchAttemptFailure as e:
                    logger.warning(str(e))
                    failures.append(e)
                    continue

                self.last_duration = time.monotonic() - started
                logger.info(
                    f"Fetch completed in {self.last_duration:.2f}s",
                    extra={'strategy': strategy.label, 'size': len(body)}
                )
                return body
        finally:
            # Abandoned downloads stop on their own at their next chunk
            executor.shutdown(wait=False)

        error = FetchExhausted(failures)
        logger.error(str(error))
        raise error

    def _attempt(
        self,
        executor: concurrent.futures.Executor,
        url: str,
        strategy: FetchStrategy
    ) -> str:
        """
        Run one strategy, giving up once its timeout has elapsed in total.

        Args:
            executor: Pool running the download
            url: Feed URL
            strategy: Strategy to apply

        Returns:
            Validated ICS text

        Raises:
            FetchAttemptFailure: On timeout, HTTP or network error, or an
                implausible payload
        """
        deadline = time.monotonic() + strategy.timeout
        abandoned = threading.Event()
        future = executor.submit(self._download, url, strategy, deadline, abandoned)

        try:
            body = future.result(timeout=strategy.timeout)
        except concurrent.futures.TimeoutError as e:
            abandoned.set()
            raise FetchAttemptFailure(
                strategy.label,
                f"timed out after {strategy.timeout}s",
                timed_out=True
            ) from e
        except requests.Timeout as e:
            raise FetchAttemptFailure(strategy.label, f"timed out: {e}", timed_out=True) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 'unknown'
            raise FetchAttemptFailure(strategy.label, f"HTTP {status}") from e
        except requests.RequestException as e:
            raise FetchAttemptFailure(strategy.label, str(e)) from e

        logger.debug(f"Calendar data size: {len(body)} characters")
        self._validate_payload(body, strategy)
        return body

    def _download(
        self,
        url: str,
        strategy: FetchStrategy,
        deadline: float,
        abandoned: threading.Event
    ) -> str:
        with requests.get(
            url,
            headers=strategy.headers,
            timeout=strategy.timeout,
            allow_redirects=True,
            stream=True
        ) as response:
            response.raise_for_status()

            content = bytearray()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if abandoned.is_set() or time.monotonic() > deadline:
                    raise requests.Timeout(
                        f"download exceeded {strategy.timeout}s"
                    )
                content.extend(chunk)

            # requests assumes ISO-8859-1 for text/* without a charset
            content_type = response.headers.get('Content-Type', '').lower()
            if 'charset=' in content_type and response.encoding:
                encoding = response.encoding
            else:
                encoding = 'utf-8'
            return content.decode(encoding, errors='replace')

    def _validate_payload(self, body: str, strategy: FetchStrategy) -> None:
        """
        Reject payloads that cannot be a calendar.

        Args:
            body: Response text
            strategy: Strategy that produced the body

        Raises:
            FetchAttemptFailure: If the body is too short or has no
                calendar markers
        """
        if len(body) < MIN_BODY_LENGTH:
            raise FetchAttemptFailure(
                strategy.label,
                f"response too short ({len(body)} characters)"
            )

        if not any(marker in body for marker in CALENDAR_MARKERS):
            raise FetchAttemptFailure(
                strategy.label,
                f"response is not calendar data{self._describe_html(body)}"
            )

    def _describe_html(self, body: str) -> str:
        if '<' not in body:
            return ''
        soup = BeautifulSoup(body, 'html.parser')
        if soup.title and soup.title.string:
            return f" (HTML page: '{soup.title.string.strip()}')"
        return ''
