"""Cancellation contexts and the registry rate limiter.

A :class:`Context` is handed down every call chain that may block (rate
limiter waits, registry requests, notification sends, task handlers) so
that a caller can cancel the whole chain, or bound it with a deadline.
Contexts form a tree: cancelling a parent cancels all of its children.
"""

import logging
import threading
import time
from typing import List, Optional

logger = logging.getLogger(__name__)


class CancellationError(Exception):
    """The operation was cancelled or ran past its deadline."""

    def __init__(self, reason: str = "context cancelled"):
        self.reason = reason
        super().__init__(reason)


class Context:
    """Cancellation signal with an optional deadline.

    Args:
        parent: Context whose cancellation also cancels this one
        timeout: Seconds until this context expires on its own
    """

    def __init__(self, parent: Optional['Context'] = None, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List['Context'] = []
        self._reason: Optional[str] = None
        self._parent = parent

        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent._deadline is not None:
            deadline = parent._deadline if deadline is None else min(deadline, parent._deadline)
        self._deadline = deadline

        if parent is not None:
            parent._attach(self)

    def _attach(self, child: 'Context') -> None:
        with self._lock:
            if self._reason is None:
                self._children.append(child)
                return
            reason = self._reason
        child.cancel(reason)

    def _detach(self, child: 'Context') -> None:
        with self._lock:
            try:
                self._children.remove(child)
            except ValueError:
                pass

    def child(self, timeout: Optional[float] = None) -> 'Context':
        """Derive a context that is cancelled together with this one."""
        return Context(parent=self, timeout=timeout)

    def release(self) -> None:
        """Detach from the parent once the work this context guarded is done."""
        if self._parent is not None:
            self._parent._detach(self)

    def cancel(self, reason: str = "context cancelled") -> None:
        with self._lock:
            if self._reason is not None:
                return
            self._reason = reason
            children = list(self._children)
            self._children.clear()
        self._event.set()
        for child in children:
            child.cancel(reason)

    @property
    def deadline(self) -> Optional[float]:
        """Monotonic deadline, or None when unbounded."""
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), or None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self._reason or "context cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to *timeout* seconds, waking early on cancellation.

        Returns:
            True if the context was cancelled (or expired) while waiting
        """
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def timeout_for(self, limit: float) -> float:
        """Clamp a per-call timeout to the time this context has left."""
        remaining = self.remaining()
        if remaining is None:
            return limit
        return max(0.001, min(limit, remaining))


def background() -> Context:
    """A fresh root context with no deadline."""
    return Context()


class RateLimiter:
    """Token bucket shared by all registry checks.

    Refills at ``requests_per_minute / 60`` tokens per second and holds at
    most ``burst`` tokens.
    """

    def __init__(self, requests_per_minute: float, burst: int):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.rate = requests_per_minute / 60.0
        self.burst = max(1, int(burst))
        self._tokens = float(self.burst)
        self._updated = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self) -> float:
        """Take a token if one is available.

        Returns:
            0.0 when a token was taken, otherwise the seconds until one will be
        """
        with self._lock:
            self._refill(time.monotonic())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.rate

    def wait(self, ctx: Context) -> None:
        """Block until a token is available.

        Raises:
            CancellationError: If *ctx* is cancelled before a token is granted
        """
        ctx.raise_if_cancelled()
        while True:
            delay = self.try_acquire()
            if delay == 0.0:
                return
            logger.debug(f"Rate limited, waiting {delay:.2f}s for a token")
            if ctx.wait(delay):
                raise CancellationError(ctx.reason or "context cancelled")
