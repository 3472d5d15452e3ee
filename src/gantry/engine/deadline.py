# src/gantry/engine/deadline.py
"""Deadlines and the timeout guard.

A single Deadline value is threaded through the call stack. Each nested
scope (run -> stage -> step) derives its deadline by clipping the enclosing
one, so the effective deadline is always the minimum of all enclosing
deadlines - there are no independent timers racing each other.

The TimeoutGuard enforces a deadline on an operation. The operation runs on
one worker thread while the caller waits; on expiry the CancellationToken
is cancelled (running subprocesses are killed, further steps are not
started) and TimeoutExceeded is raised in the caller.

Accepted limitation: cancellation is cooperative. If the operation ignores
the token (e.g. a Python step stuck in a tight loop) the guard detaches
from it, logs a warning, and reports the timeout with detached=True. The
worker thread is a daemon so it never blocks interpreter exit.
"""

from __future__ import annotations

import contextvars
import threading
from collections.abc import Callable
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import TypeVar

from gantry.contracts.enums import TimeoutScope
from gantry.contracts.errors import TimeoutExceeded
from gantry.core.logging import get_logger
from gantry.engine.clock import DEFAULT_CLOCK, Clock

T = TypeVar("T")

logger = get_logger(__name__)

# How long a cancelled operation gets to stop before the guard detaches
DEFAULT_CANCEL_GRACE_SECONDS = 2.0


class OperationCancelled(Exception):
    """Raised inside a worker that noticed its token was cancelled.

    The caller has already raised TimeoutExceeded; this only unwinds the
    abandoned worker so it stops doing work.
    """


class CancellationToken:
    """Cross-thread cancellation signal with kill callbacks.

    Step executors register a callback (e.g. "kill this process") for the
    duration of a step; cancel() fires every registered callback once.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Cancel the token and fire registered callbacks. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                # Best-effort interruption: one failed kill must not stop the others
                logger.warning("Cancellation callback failed", exc_info=True)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it.

        If the token is already cancelled, the callback runs immediately.
        """
        with self._lock:
            already_cancelled = self._event.is_set()
            if not already_cancelled:
                self._callbacks.append(callback)
        if already_cancelled:
            callback()

        def unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unregister

    def raise_if_cancelled(self, label: str) -> None:
        """Raise OperationCancelled if cancel() has been called."""
        if self._event.is_set():
            raise OperationCancelled(f"'{label}' cancelled")


@dataclass(frozen=True, slots=True)
class Deadline:
    """An absolute point on a monotonic clock, or no limit at all.

    Attributes:
        expires_at: Monotonic expiry time; None means unbounded
        scope: Which level set this deadline (reported on expiry)
        limit_seconds: The configured duration that produced expires_at
        clock: Clock used for remaining() and expired()
    """

    expires_at: float | None
    scope: TimeoutScope
    limit_seconds: float | None = None
    clock: Clock = field(default=DEFAULT_CLOCK, repr=False, compare=False)

    @classmethod
    def unbounded(cls, scope: TimeoutScope = TimeoutScope.RUN, *, clock: Clock = DEFAULT_CLOCK) -> Deadline:
        """A deadline that never expires."""
        return cls(expires_at=None, scope=scope, limit_seconds=None, clock=clock)

    @classmethod
    def after(cls, seconds: float | None, scope: TimeoutScope, *, clock: Clock = DEFAULT_CLOCK) -> Deadline:
        """A deadline `seconds` from now (unbounded if seconds is None).

        Raises:
            ValueError: If seconds is not positive.
        """
        if seconds is None:
            return cls.unbounded(scope, clock=clock)
        if seconds <= 0:
            raise ValueError(f"Timeout must be positive, got {seconds}")
        return cls(expires_at=clock.monotonic() + seconds, scope=scope, limit_seconds=seconds, clock=clock)

    @property
    def bounded(self) -> bool:
        return self.expires_at is not None

    def remaining(self) -> float | None:
        """Seconds left (never negative), or None if unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock.monotonic())

    def expired(self) -> bool:
        if self.expires_at is None:
            return False
        return self.clock.monotonic() >= self.expires_at

    def clip(self, seconds: float | None, scope: TimeoutScope) -> Deadline:
        """Derive a nested deadline: min(this deadline, now + seconds).

        When this (enclosing) deadline is the tighter one it is returned
        unchanged, keeping its scope - a timeout there is reported as the
        enclosing scope's timeout (e.g. RUN), not the inner one.
        """
        if seconds is None:
            return self
        candidate = Deadline.after(seconds, scope, clock=self.clock)
        if self.expires_at is not None and candidate.expires_at is not None and self.expires_at <= candidate.expires_at:
            return self
        return candidate

    def check(self, label: str, *, step: str | None = None) -> None:
        """Raise TimeoutExceeded if the deadline has already passed."""
        if self.expired():
            raise TimeoutExceeded(self.scope, self.limit_seconds, label, step=step)


class TimeoutGuard:
    """Runs operations under a Deadline.

    Example:
        guard = TimeoutGuard()
        deadline = run_deadline.clip(stage.timeout_seconds, TimeoutScope.STAGE)
        guard.run(deadline, lambda token: body.execute(token), label=stage.name)
    """

    def __init__(self, *, cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS) -> None:
        self._cancel_grace_seconds = cancel_grace_seconds

    def run(self, deadline: Deadline, operation: Callable[[CancellationToken], T], *, label: str) -> T:
        """Run operation(token) and return its result, or raise TimeoutExceeded.

        Unbounded deadlines run the operation inline on the calling thread.
        Exceptions raised by the operation propagate unchanged.
        """
        token = CancellationToken()
        if not deadline.bounded:
            return operation(token)

        deadline.check(label)

        future: Future[T] = Future()
        # Carry contextvars (bound log context, current span) into the worker
        context = contextvars.copy_context()

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(context.run(operation, token))
            except BaseException as exc:
                future.set_exception(exc)

        worker = threading.Thread(target=_target, name=f"gantry-guard-{label}", daemon=True)
        worker.start()

        done, _ = wait([future], timeout=deadline.remaining())
        if future in done:
            return future.result()

        token.cancel()
        stopped, _ = wait([future], timeout=self._cancel_grace_seconds)
        detached = future not in stopped
        if detached:
            logger.warning(
                "Operation did not stop after cancellation; detaching",
                label=label,
                scope=deadline.scope.value,
                grace_seconds=self._cancel_grace_seconds,
            )
        raise TimeoutExceeded(deadline.scope, deadline.limit_seconds, label, detached=detached)
