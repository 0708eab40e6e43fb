"""
Per-integration mutual exclusion for OAuth token refreshes.

Entries live in process memory and are keyed by ``(provider, integration_id)``.
A lock expires after ``REFRESH_LOCK_TIMEOUT_SECONDS`` and is force-released as
soon as the thread holding it has exited.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, TypeVar

from calsync.core.config import settings
from calsync.core.exceptions import LockTimeoutError, RefreshInProgressError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RefreshLock:
    acquired_at: float
    holder: threading.Thread


class RefreshLockCoordinator:
    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout_seconds = (
            settings.REFRESH_LOCK_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self.poll_interval = (
            settings.REFRESH_LOCK_POLL_SECONDS if poll_interval is None else poll_interval
        )
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[Hashable, RefreshLock] = {}
        self._mutex = threading.Lock()

    def _is_stale(self, lock: RefreshLock, now: float) -> bool:
        return now - lock.acquired_at > self.timeout_seconds or not lock.holder.is_alive()

    def acquire(self, key: Hashable) -> bool:
        now = self._clock()
        with self._mutex:
            current = self._locks.get(key)
            if current is not None:
                if not self._is_stale(current, now):
                    return False
                logger.warning(f"Force-releasing stale refresh lock for {key}")
            self._locks[key] = RefreshLock(acquired_at=now, holder=threading.current_thread())
            return True

    def release(self, key: Hashable) -> None:
        with self._mutex:
            current = self._locks.get(key)
            if current is None:
                return
            if current.holder is not threading.current_thread():
                logger.debug(f"Ignoring release of {key} from a thread that does not hold it")
                return
            del self._locks[key]

    def with_lock(
        self,
        key: Hashable,
        fn: Callable[[], T],
        blocking: bool = False,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``fn`` while holding the lock for ``key``.

        Non-blocking calls raise ``RefreshInProgressError`` when the lock is
        taken; blocking calls poll until ``timeout`` and then raise
        ``LockTimeoutError``. ``fn`` never runs without the lock.
        """
        if not self.acquire(key):
            if not blocking:
                raise RefreshInProgressError(f"Token refresh already in progress for {key}")
            self._wait_for(key, settings.REFRESH_LOCK_WAIT_SECONDS if timeout is None else timeout)
        try:
            return fn()
        finally:
            self.release(key)

    def _wait_for(self, key: Hashable, timeout: float) -> None:
        deadline = self._clock() + timeout
        while True:
            self._sleep(self.poll_interval)
            if self.acquire(key):
                return
            if self._clock() >= deadline:
                raise LockTimeoutError(f"Timed out waiting for refresh lock on {key}")

    def sweep(self) -> int:
        """Drop expired entries and entries whose holder has exited."""
        now = self._clock()
        with self._mutex:
            stale = [key for key, lock in self._locks.items() if self._is_stale(lock, now)]
            for key in stale:
                del self._locks[key]
        if stale:
            logger.info(f"Swept {len(stale)} stale refresh locks")
        return len(stale)

    # Test hooks

    def put_lock(self, key: Hashable, acquired_at: float, holder: threading.Thread) -> None:
        with self._mutex:
            self._locks[key] = RefreshLock(acquired_at=acquired_at, holder=holder)

    def get_lock(self, key: Hashable) -> Optional[RefreshLock]:
        with self._mutex:
            return self._locks.get(key)


_default_coordinator: Optional[RefreshLockCoordinator] = None
_default_lock = threading.Lock()


def get_refresh_lock_coordinator() -> RefreshLockCoordinator:
    global _default_coordinator
    with _default_lock:
        if _default_coordinator is None:
            _default_coordinator = RefreshLockCoordinator()
        return _default_coordinator
