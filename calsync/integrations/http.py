"""
Shared HTTP plumbing for the requests-based adapters (Outlook, CalDAV).

Every outbound call carries its own (connect, read) timeout, and transport
failures are turned into typed provider errors at this boundary.
"""
import logging
import time
from typing import Callable, Optional, Tuple, TypeVar

import requests

from calsync.core.config import settings
from calsync.core.exceptions import ProviderTimeoutError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def timeout_for(read_timeout: Optional[float] = None) -> Tuple[float, float]:
    """(connect, read) timeout tuple in the form requests expects."""
    return (
        settings.CONNECT_TIMEOUT,
        settings.REQUEST_TIMEOUT if read_timeout is None else read_timeout,
    )


def send(
    session: requests.Session,
    method: str,
    url: str,
    *,
    provider: str,
    read_timeout: Optional[float] = None,
    **kwargs,
) -> requests.Response:
    try:
        return session.request(method, url, timeout=timeout_for(read_timeout), **kwargs)
    except requests.Timeout as e:
        raise ProviderTimeoutError(
            f"{provider} {method} request timed out", provider=provider
        ) from e
    except requests.ConnectionError as e:
        raise TransientError(
            f"{provider} network error: {e}", provider=provider
        ) from e
    except requests.RequestException as e:
        raise TransientError(
            f"{provider} request failed: {e}", provider=provider
        ) from e


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Seconds from a ``Retry-After`` header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return None


def with_retries(
    operation: Callable[[], T],
    *,
    retries: int,
    base_delay: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> T:
    """
    Run ``operation``, retrying transient failures with exponential delay.

    Rate limits and permanent errors are raised immediately.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except TransientError as e:
            if attempt >= retries:
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            logger.info(
                f"Retrying {label} after transient error ({e.message}); "
                f"attempt {attempt}/{retries} in {delay:.1f}s"
            )
            sleep(delay)
