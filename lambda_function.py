"""AWS Lambda handler serving upcoming events from an ICS calendar feed."""
import json
import logging
import os
import time
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Optional

from processor.date_parser import DateValueParser, local_reference_tz
from processor.exceptions import SourceUnavailable
from processor.ics_parser import FeedParser
from processor.query_pipeline import QueryPipeline, build_query_params, parse_limit
from scraper.feed_fetcher import ResilientFetcher
from storage.freshness_cache import FreshnessCache

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type'
}

# Lives for the lifetime of the Lambda container
_feed_cache: Optional[FreshnessCache] = None
_feed_cache_key: Optional[tuple] = None


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def get_feed_cache(
    url: str,
    freshness_seconds: float,
    stale_multiplier: float,
    slow_fetch_seconds: float,
    reference_tz: tzinfo,
    date_boundary: str
) -> FreshnessCache:
    """
    Return the process-wide cache for a feed, creating it on first use.

    The cache is rebuilt whenever any argument changes. Cached events were
    parsed in ``reference_tz`` and early-filtered under ``date_boundary``,
    so they cannot be reused once the local offset or the policy differs.

    Args:
        url: ICS feed URL
        freshness_seconds: Freshness window in seconds
        stale_multiplier: Stale window as a multiple of the freshness window
        slow_fetch_seconds: Fetch duration above which windows are extended
        reference_tz: Frame for floating and date-only values
        date_boundary: Date filter policy the early filter follows

    Returns:
        FreshnessCache bound to the feed
    """
    global _feed_cache, _feed_cache_key

    key = (
        url,
        freshness_seconds,
        stale_multiplier,
        slow_fetch_seconds,
        reference_tz,
        date_boundary
    )
    if _feed_cache is None or _feed_cache_key != key:
        if _feed_cache is not None:
            logging.getLogger(__name__).info(
                "Feed settings or local offset changed, rebuilding cache"
            )
        fetcher = ResilientFetcher()
        parser = FeedParser(DateValueParser(reference_tz))

        def load_events(not_before):
            return parser.parse(fetcher.fetch(url), not_before=not_before)

        _feed_cache = FreshnessCache(
            loader=load_events,
            freshness_window=freshness_seconds,
            stale_window=freshness_seconds * stale_multiplier,
            slow_fetch_threshold=slow_fetch_seconds
        )
        _feed_cache_key = key
    return _feed_cache


def reset_feed_cache() -> None:
    """Drop the process-wide cache."""
    global _feed_cache, _feed_cache_key
    _feed_cache = None
    _feed_cache_key = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _response(status_code: int, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json', **CORS_HEADERS},
        'body': json.dumps(body) if body is not None else ''
    }


def _request_method(event: Dict[str, Any]) -> str:
    method = event.get('httpMethod')
    if not method:
        request_context = event.get('requestContext') or {}
        method = (request_context.get('http') or {}).get('method') or 'GET'
    return method.upper()


def health_check(url: Optional[str]) -> Dict[str, Any]:
    """Report whether configuration and cache are in place."""
    cache_populated = _feed_cache is not None and _feed_cache.entry is not None
    return _response(200, {
        'success': True,
        'message': 'Function is working',
        'env': 'Environment variable found' if url else 'Environment variable missing',
        'cache': 'Cache populated' if cache_populated else 'Cache empty'
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler returning upcoming calendar events.

    Args:
        event: API Gateway event with optional ``keyword`` and ``limit``
            query string parameters
        context: Lambda context object

    Returns:
        Response dict with statusCode, headers and JSON body
    """
    # Read configuration from environment variables
    url = os.environ.get('CALENDAR_URL')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    display_timezone = os.environ.get('DISPLAY_TIMEZONE', 'Europe/Rome')
    date_boundary = os.environ.get('DATE_BOUNDARY', 'start_of_day')

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    event = event or {}
    if _request_method(event) == 'OPTIONS':
        return _response(200, None)

    query = event.get('queryStringParameters') or {}
    if query.get('test') == 'true':
        return health_check(url)

    if not url:
        logger.error("CALENDAR_URL environment variable is not set")
        return _response(400, {
            'success': False,
            'error': 'CALENDAR_URL environment variable is not set',
            'error_type': 'ConfigurationError'
        })

    start_time = time.time()
    logger.info(
        "Calendar request started",
        extra={'keyword': query.get('keyword'), 'limit': query.get('limit')}
    )

    try:
        freshness_seconds = float(os.environ.get('CACHE_TTL_SECONDS', '300'))
        stale_multiplier = float(os.environ.get('STALE_TTL_MULTIPLIER', '3'))
        slow_fetch_seconds = float(os.environ.get('SLOW_FETCH_SECONDS', '3'))
        default_limit = parse_limit(os.environ.get('DEFAULT_LIMIT'), 100)

        reference_tz = local_reference_tz()
        params = build_query_params(
            query,
            now=_utcnow(),
            reference_tz=reference_tz,
            boundary=date_boundary,
            default_limit=default_limit
        )

        cache = get_feed_cache(
            url,
            freshness_seconds,
            stale_multiplier,
            slow_fetch_seconds,
            reference_tz,
            date_boundary
        )
        lookup = cache.get(not_before=params.as_of)

        pipeline = QueryPipeline(reference_tz, display_timezone)
        formatted = pipeline.execute(lookup.events, params)

        duration = time.time() - start_time
        logger.info(
            f"Returning {len(formatted)} events",
            extra={'tier': lookup.tier.value, 'duration_seconds': round(duration, 2)}
        )
        return _response(200, {
            'success': True,
            'keyword': params.keyword or 'all events',
            'count': len(formatted),
            'cached': lookup.cached,
            'tier': lookup.tier.value,
            'events': formatted
        })

    except SourceUnavailable as e:
        duration = time.time() - start_time
        logger.error(
            f"Calendar source unavailable: {e}",
            extra={'error_type': type(e).__name__, 'duration_seconds': round(duration, 2)}
        )
        if e.timed_out:
            return _response(408, {
                'success': False,
                'error': 'Calendar source is consistently slow or unresponsive. Please try again later.',
                'error_type': type(e).__name__,
                'details': str(e.cause)
            })
        return _response(503, {
            'success': False,
            'error': 'Failed to fetch calendar data',
            'error_type': type(e).__name__,
            'details': str(e.cause)
        })

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Calendar request failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'success': False,
            'error': 'Internal server error',
            'error_type': type(e).__name__,
            'details': str(e)
        })
