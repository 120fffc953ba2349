"""Unit tests for ResilientFetcher."""
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import responses
from requests.exceptions import ConnectionError, Timeout

from processor.exceptions import FetchExhausted
from processor.models import FetchStrategy
from scraper.feed_fetcher import DEFAULT_STRATEGIES, ResilientFetcher

FEED_URL = "https://calendar.example.edu/school.ics"

VALID_ICS = (
    "BEGIN:VCALENDAR\r\n"
    "VERSION:2.0\r\n"
    "BEGIN:VEVENT\r\n"
    "SUMMARY:Math Exam\r\n"
    "DTSTART:20990615T090000Z\r\n"
    "END:VEVENT\r\n"
    "END:VCALENDAR\r\n"
)


@pytest.fixture
def strategies():
    return [
        FetchStrategy(timeout=1, headers={'User-Agent': 'Calendar-Parser/1.0'}, label='Quick (1s)'),
        FetchStrategy(timeout=5, headers={'User-Agent': 'Mozilla/5.0'}, label='Patient (5s)'),
    ]


class TestResilientFetcher:
    """Test cases for ResilientFetcher class."""

    @responses.activate
    def test_fetch_success_first_strategy(self, strategies):
        """Test a healthy upstream is served by the first strategy."""
        responses.add(responses.GET, FEED_URL, body=VALID_ICS, status=200)

        fetcher = ResilientFetcher(strategies)
        body = fetcher.fetch(FEED_URL)

        assert body == VALID_ICS
        assert len(responses.calls) == 1
        assert responses.calls[0].request.headers['User-Agent'] == 'Calendar-Parser/1.0'
        assert fetcher.last_duration is not None

    @responses.activate
    def test_slow_upstream_succeeds_with_second_strategy(self, strategies):
        """Test a timeout on the short strategy escalates to the longer one."""
        responses.add(responses.GET, FEED_URL, body=Timeout("Read timed out"))
        responses.add(responses.GET, FEED_URL, body=VALID_ICS, status=200)

        fetcher = ResilientFetcher(strategies)
        body = fetcher.fetch(FEED_URL)

        assert body == VALID_ICS
        assert len(responses.calls) == 2
        assert responses.calls[1].request.headers['User-Agent'] == 'Mozilla/5.0'

    @responses.activate
    def test_html_error_page_rejected(self, strategies):
        """Test an HTML page is not accepted as calendar data."""
        html = (
            "<html><head><title>Service Temporarily Unavailable</title></head>"
            "<body><h1>Please try again later</h1></body></html>"
        )
        responses.add(responses.GET, FEED_URL, body=html, status=200)
        responses.add(responses.GET, FEED_URL, body=VALID_ICS, status=200)

        fetcher = ResilientFetcher(strategies)
        body = fetcher.fetch(FEED_URL)

        assert body == VALID_ICS
        assert len(responses.calls) == 2

    @responses.activate
    def test_short_body_rejected(self, strategies):
        """Test implausibly short bodies fail the attempt."""
        responses.add(responses.GET, FEED_URL, body="BEGIN:VCALENDAR", status=200)
        responses.add(responses.GET, FEED_URL, body="BEGIN:VCALENDAR", status=200)

        fetcher = ResilientFetcher(strategies)

        with pytest.raises(FetchExhausted) as exc_info:
            fetcher.fetch(FEED_URL)

        assert 'too short' in str(exc_info.value.last_error)

    @responses.activate
    def test_all_strategies_fail_with_http_error(self, strategies):
        """Test exhaustion carries the last underlying error."""
        responses.add(responses.GET, FEED_URL, body="Service Unavailable", status=503)
        responses.add(responses.GET, FEED_URL, body="Service Unavailable", status=503)

        fetcher = ResilientFetcher(strategies)

        with pytest.raises(FetchExhausted) as exc_info:
            fetcher.fetch(FEED_URL)

        error = exc_info.value
        assert len(error.failures) == 2
        assert error.last_error.label == 'Patient (5s)'
        assert 'HTTP 503' in str(error.last_error)
        assert error.timed_out is False
        assert len(responses.calls) == 2

    @responses.activate
    def test_all_strategies_time_out(self, strategies):
        """Test exhaustion reports when every attempt timed out."""
        responses.add(responses.GET, FEED_URL, body=Timeout("Request timed out"))
        responses.add(responses.GET, FEED_URL, body=Timeout("Request timed out"))

        fetcher = ResilientFetcher(strategies)

        with pytest.raises(FetchExhausted) as exc_info:
            fetcher.fetch(FEED_URL)

        assert exc_info.value.timed_out is True

    @responses.activate
    def test_connection_error_then_success(self, strategies):
        """Test non-timeout network errors also move on to the next strategy."""
        responses.add(responses.GET, FEED_URL, body=ConnectionError("Connection refused"))
        responses.add(responses.GET, FEED_URL, body=VALID_ICS, status=200)

        fetcher = ResilientFetcher(strategies)

        assert fetcher.fetch(FEED_URL) == VALID_ICS

    @responses.activate
    def test_redirect_followed(self, strategies):
        """Test redirects are followed to the calendar data."""
        moved_url = "https://cdn.example.edu/school.ics"
        responses.add(
            responses.GET, FEED_URL, status=302, headers={'Location': moved_url}
        )
        responses.add(responses.GET, moved_url, body=VALID_ICS, status=200)

        fetcher = ResilientFetcher(strategies)

        assert fetcher.fetch(FEED_URL) == VALID_ICS

    def test_default_strategies_escalate_timeouts(self):
        """Test the built-in strategies grow more patient."""
        timeouts = [s.timeout for s in DEFAULT_STRATEGIES]

        assert timeouts == sorted(timeouts)
        assert timeouts == [5, 15, 25]

    def test_strategy_requires_positive_timeout(self):
        """Test a zero timeout strategy is rejected."""
        with pytest.raises(ValueError):
            FetchStrategy(timeout=0, headers={}, label='Broken')


class DribblingHandler(BaseHTTPRequestHandler):
    """Serves the calendar, sending the first bytes one at a time when slow."""

    def do_GET(self):
        server = self.server
        with server.lock:
            server.requests_seen += 1
            slow = server.requests_seen <= server.slow_requests

        payload = VALID_ICS.encode('utf-8')
        self.send_response(200)
        self.send_header('Content-Type', 'text/calendar; charset=utf-8')
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        try:
            if slow:
                for i in range(8):
                    self.wfile.write(payload[i:i + 1])
                    self.wfile.flush()
                    time.sleep(0.6)
                payload = payload[8:]
            self.wfile.write(payload)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def calendar_server(monkeypatch):
    """Local HTTP server whose first responses trickle in slowly."""
    monkeypatch.setenv('NO_PROXY', '127.0.0.1,localhost')
    monkeypatch.setenv('no_proxy', '127.0.0.1,localhost')
    server = ThreadingHTTPServer(('127.0.0.1', 0), DribblingHandler)
    server.daemon_threads = True
    server.lock = threading.Lock()
    server.requests_seen = 0
    server.slow_requests = 1
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def server_url(server):
    host, port = server.server_address
    return f"http://{host}:{port}/school.ics"


class TestAttemptDeadline:
    """Test cases for the overall time limit of a strategy attempt."""

    def test_trickling_response_abandoned_at_timeout(self, calendar_server):
        """Test a body arriving byte by byte cannot outlive the strategy timeout."""
        fetcher = ResilientFetcher([
            FetchStrategy(timeout=1, headers={}, label='Quick (1s)')
        ])

        started = time.monotonic()
        with pytest.raises(FetchExhausted) as exc_info:
            fetcher.fetch(server_url(calendar_server))
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        assert exc_info.value.timed_out is True

    def test_next_strategy_starts_after_abandoned_attempt(self, calendar_server):
        """Test the patient strategy runs as soon as the quick one gives up."""
        fetcher = ResilientFetcher([
            FetchStrategy(timeout=1, headers={}, label='Quick (1s)'),
            FetchStrategy(timeout=5, headers={}, label='Patient (5s)'),
        ])

        started = time.monotonic()
        body = fetcher.fetch(server_url(calendar_server))
        elapsed = time.monotonic() - started

        assert body == VALID_ICS
        assert elapsed < 3.0
        assert calendar_server.requests_seen == 2

    @responses.activate
    def test_utf8_body_without_charset(self, strategies):
        """Test bodies without a declared charset are decoded as UTF-8."""
        ics = VALID_ICS.replace('Math Exam', 'Esame di Città')
        responses.add(
            responses.GET,
            FEED_URL,
            body=ics.encode('utf-8'),
            status=200,
            content_type='text/calendar'
        )

        fetcher = ResilientFetcher(strategies)

        assert 'Esame di Città' in fetcher.fetch(FEED_URL)
