import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, TypeVar

from drum.domain.errors import AuthenticationFailed, RateLimited, RemoteNotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# A page fetcher takes (offset, limit) and returns the page items plus the
# total the server declares for the listing, if any.
PageFetcher = Callable[[int, int], Tuple[List[T], Optional[int]]]

DEFAULT_MAX_ITEMS = 10_000
DEFAULT_ATTEMPTS = 3
MAX_RETRY_AFTER_SEC = 300.0

# Receives (description, item, error) for every item isolate_failures skips.
FailureListener = Callable[[str, object, Exception], None]
_failure_listener: ContextVar[Optional[FailureListener]] = ContextVar("failure_listener", default=None)


@contextmanager
def collecting_failures(listener: FailureListener):
    """Report items skipped by isolate_failures to listener while the block runs."""
    token = _failure_listener.set(listener)
    try:
        yield
    finally:
        _failure_listener.reset(token)


def _report_failure(description: str, item: object, error: Exception) -> None:
    listener = _failure_listener.get()
    if listener is not None:
        listener(description, item, error)


def paginate(fetch: PageFetcher,
             limit: int,
             label: str = "listing",
             max_items: int = DEFAULT_MAX_ITEMS) -> Iterator[T]:
    """Lazily walk an offset/limit listing.

    Items are yielded as each page arrives. The walk ends on the first short
    page or once the offset reaches the declared total, whichever comes first.
    It is truncated with a warning after max_items items, or when the server
    returns more than one chunk beyond the total it declared.

    Args:
        fetch: Page fetcher called with (offset, limit)
        limit: Fixed chunk size
        label: Name of the listing for log messages
        max_items: Hard cap on the number of items yielded

    Yields:
        Items in the order the server returns them
    """
    offset = 0
    fetched = 0
    total: Optional[int] = None

    while total is None or offset < total:
        items, declared_total = fetch(offset, limit)
        if declared_total is not None:
            total = declared_total

        for item in items:
            if fetched >= max_items:
                logger.warning(f"Truncating {label} at {fetched} items, "
                               f"since it exceeds the maximum of {max_items}")
                return
            fetched += 1
            yield item

        offset += limit

        if len(items) < limit:
            if total is not None and fetched < total:
                logger.warning(f"{label} ended after {fetched} items, short of "
                               f"its declared length of {total}")
            break
        if total is not None and fetched > total + limit:
            logger.warning(f"Truncating {label} at {fetched} items, which is more "
                           f"than its declared length of {total} would suggest")
            break


def with_rate_limit_retry(operation: Callable[[], R],
                          description: str,
                          attempts: int = DEFAULT_ATTEMPTS,
                          max_retry_after_sec: float = MAX_RETRY_AFTER_SEC) -> R:
    """Run an operation, sleeping and retrying when the remote side rate limits it.

    The server-declared delay is honoured when it is at most max_retry_after_sec;
    a longer delay, or running out of attempts, re-raises RateLimited.
    Other errors propagate unchanged.
    """
    for attempt in range(attempts):
        if attempt > 0:
            logger.info(f"Attempt #{attempt + 1} to {description}...")
        try:
            return operation()
        except RateLimited as e:
            seconds = e.retry_after_sec
            if seconds > max_retry_after_sec:
                logger.error(f"Rate limited while trying to {description} "
                             f"with a too large retry time of {seconds}s")
                raise
            if attempt + 1 >= attempts:
                logger.error(f"Rate limited while trying to {description}, giving up after {attempts} attempts")
                raise
            logger.warning(f"Rate limited while trying to {description}, retrying in {seconds}s...")
            time.sleep(seconds)

    raise ValueError("attempts must be at least 1")


def isolate_failures(items: Iterable[T],
                     operation: Callable[[T], R],
                     describe: Callable[[T], str] = str,
                     attempts: int = DEFAULT_ATTEMPTS) -> Iterator[R]:
    """Apply a per-item operation across a listing, skipping items that fail.

    Each item gets rate-limit backoff. Items whose operation fails for any other
    reason are logged and skipped so the rest of the listing still comes
    through. Exhausted rate limits and authentication failures abort the
    listing.
    """
    for item in items:
        description = describe(item)
        try:
            result = with_rate_limit_retry(lambda: operation(item), description, attempts=attempts)
        except (RateLimited, AuthenticationFailed):
            raise
        except RemoteNotFound as e:
            logger.info(f"Skipping, could not {description}: {e}")
            _report_failure(description, item, e)
            continue
        except Exception as e:
            logger.warning(f"Skipping, could not {description}: {e}")
            _report_failure(description, item, e)
            continue
        yield result


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Split items into consecutive lists of at most size elements."""
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class RateLimiter:
    """Token bucket allowing at most `rate` calls per `interval` seconds.

    Callers block (sleep) until a token is available; there is no queueing
    across threads.
    """

    def __init__(self, rate: int, interval: float = 1.0):
        if rate <= 0 or interval <= 0:
            raise ValueError("rate and interval must be positive")
        self.rate = rate
        self.interval = interval
        self._tokens = float(rate)
        self._last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._last_refill = now
        self._tokens = min(float(self.rate), self._tokens + elapsed * self.rate / self.interval)

    def acquire(self) -> None:
        """Take one token, sleeping until one is available."""
        self._refill()
        if self._tokens < 1.0:
            wait_sec = (1.0 - self._tokens) * self.interval / self.rate
            logger.debug(f"Rate limiter sleeping for {wait_sec:.2f}s")
            time.sleep(wait_sec)
            self._refill()
            self._tokens = max(self._tokens, 1.0)
        self._tokens -= 1.0

    def __call__(self, func: Callable[..., R]) -> Callable[..., R]:
        @wraps(func)
        def limited(*args, **kwargs):
            self.acquire()
            return func(*args, **kwargs)
        return limited
