"""
Cancellable deadline scopes and the two join combinators built on them.

Every wait in the runner lifecycle runs inside a CancelScope. Scopes
nest: a child inherits the earlier of its own and its parent's deadline,
and cancelling a parent cancels every child. Worker tasks cooperate by
sleeping on their scope (which wakes immediately on cancel) and by
calling ``scope.check()`` between external calls.

Two joins share that machinery:

``join_all``
    Eager-abort join. Every task must succeed. The first failure cancels
    the siblings and is raised as soon as they have unwound.

``join_all_collect``
    Aggregate join. Failures never cancel siblings. Every task's value
    or error is returned.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Mapping, Optional, Set, Tuple, TypeVar

from .errors import CancelledError, DeadlineExceeded, RunnerError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Task = Callable[["CancelScope"], T]

# How long a join waits for cancelled workers to unwind before abandoning them.
JOIN_GRACE = 5.0
_TICK = 0.05
_DEADLINE = "deadline exceeded"


# ---------------------------------------------------------------------------
# Cancel scope
# ---------------------------------------------------------------------------

class CancelScope:
    """A cancellable region with an optional deadline.

    Args:
        timeout: Seconds from now until the scope expires. ``None`` means
            no deadline of its own.
        parent: Enclosing scope. Its deadline and cancellation apply here.
        name: Used in log lines and error messages.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        parent: Optional["CancelScope"] = None,
        name: str = "scope",
    ) -> None:
        self.name = name
        self.timeout = timeout
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List[CancelScope] = []
        self._reason: Optional[str] = None

        deadline = None if timeout is None else time.monotonic() + timeout
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline: Optional[float] = deadline

        if parent is not None:
            parent._adopt(self)

    def __repr__(self) -> str:
        return f"CancelScope({self.name!r}, remaining={self.remaining()}, reason={self._reason!r})"

    def _adopt(self, child: "CancelScope") -> None:
        with self._lock:
            self._children.append(child)
            reason = self._reason if self._event.is_set() else None
        if reason is not None:
            child.cancel(reason)

    def child(self, timeout: Optional[float] = None, name: Optional[str] = None) -> "CancelScope":
        """Derive a nested scope with an optional tighter deadline."""
        return CancelScope(timeout=timeout, parent=self, name=name or self.name)

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this scope and all of its children.

        The first reason given wins; later calls only propagate.
        """
        with self._lock:
            if self._reason is None:
                self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self.expired:
            return _DEADLINE
        return None

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, 0 once cancelled, None if unbounded."""
        if self._event.is_set():
            return 0.0
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def sleep(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``, waking early on cancel or deadline.

        Returns:
            True if the scope is still active afterwards.
        """
        if self.cancelled:
            return False
        remaining = self.remaining()
        delay = seconds if remaining is None else min(seconds, remaining)
        self._event.wait(max(0.0, delay))
        return not self.cancelled

    def error(self, what: str) -> CancelledError:
        """Build the exception describing why this scope ended."""
        reason = self.reason
        if reason is None or reason == _DEADLINE:
            limit = f" after {self.timeout:g}s" if self.timeout is not None else ""
            return DeadlineExceeded(f"{what}: deadline exceeded{limit}")
        return CancelledError(f"{what}: {reason}")

    def check(self, what: str) -> None:
        """Raise if the scope has been cancelled or has expired.

        Raises:
            DeadlineExceeded: If the deadline passed.
            CancelledError: If the scope was cancelled explicitly.
        """
        if self.cancelled:
            raise self.error(what)


def poll_until(
    attempt: Callable[[], Optional[T]],
    scope: CancelScope,
    interval: float,
    what: str,
) -> T:
    """Call ``attempt`` until it returns something other than None.

    Args:
        attempt: Zero-argument callable. Exceptions propagate unchanged.
        scope: Scope bounding the whole wait.
        interval: Seconds between attempts.
        what: Description used in the cancellation error.

    Raises:
        CancelledError: When the scope ends before the attempt succeeds.
    """
    while True:
        scope.check(what)
        result = attempt()
        if result is not None:
            return result
        if not scope.sleep(interval):
            raise scope.error(what)


# ---------------------------------------------------------------------------
# Joins
# ---------------------------------------------------------------------------

class TaskFailure(RunnerError):
    """A named task inside ``join_all`` failed."""

    def __init__(self, name: str, error: BaseException) -> None:
        self.name = name
        self.error = error
        super().__init__(f"{name}: {error}")


@dataclass
class TaskResult(Generic[T]):
    """Outcome of one task in ``join_all_collect``."""

    name: str
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _run(fn: Task, scope: CancelScope):
    return fn(scope)


def _start(
    tasks: Mapping[str, Task], group: CancelScope, prefix: str,
) -> Tuple[ThreadPoolExecutor, Dict[Future, str]]:
    executor = ThreadPoolExecutor(max_workers=max(1, len(tasks)), thread_name_prefix=prefix)
    futures = {executor.submit(_run, fn, group): name for name, fn in tasks.items()}
    return executor, futures


def _drive(
    futures: Dict[Future, str],
    group: CancelScope,
    grace: float,
    eager: bool,
) -> Tuple[Optional[Future], Set[Future]]:
    """Wait for futures until done, first failure (if eager) or scope end.

    Returns the first failed future (eager mode only) and whatever is
    still pending after the grace period.
    """
    pending: Set[Future] = set(futures)
    failed: Optional[Future] = None
    while pending:
        done, pending = wait(pending, timeout=_TICK, return_when=FIRST_COMPLETED)
        if eager:
            for fut in done:
                if fut.exception() is not None:
                    failed = fut
                    group.cancel(f"{futures[fut]} failed")
                    break
        if failed is not None or group.cancelled:
            break
    if pending:
        if not group.cancelled:
            group.cancel(_DEADLINE)
        _, pending = wait(pending, timeout=grace)
        for fut in pending:
            logger.warning("Abandoning task %s after cancellation", futures[fut])
    return failed, pending


def join_all(
    tasks: Mapping[str, Task],
    scope: CancelScope,
    grace: float = JOIN_GRACE,
) -> Dict[str, T]:
    """Run tasks concurrently; succeed only if all succeed.

    The first task to fail cancels the shared child scope, the remaining
    tasks are given ``grace`` seconds to unwind, and the failure is
    raised. Completion order does not matter.

    Args:
        tasks: Task callables keyed by name. Each receives the shared
            child scope.
        scope: Parent scope supplying the deadline.
        grace: Seconds to wait for cancelled tasks to return.

    Returns:
        Task results keyed by name.

    Raises:
        TaskFailure: Wrapping the first error observed.
    """
    group = scope.child(name=scope.name)
    executor, futures = _start(tasks, group, "join")
    try:
        failed, pending = _drive(futures, group, grace, eager=True)
        if failed is not None:
            raise TaskFailure(futures[failed], failed.exception())

        results: Dict[str, T] = {}
        for fut, name in futures.items():
            if fut in pending:
                raise TaskFailure(name, group.error(name))
            exc = fut.exception()
            if exc is not None:
                raise TaskFailure(name, exc)
            results[name] = fut.result()
        return results
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def join_all_collect(
    tasks: Mapping[str, Task],
    scope: CancelScope,
    grace: float = JOIN_GRACE,
) -> Dict[str, TaskResult]:
    """Run tasks concurrently and collect every outcome.

    A failing task never cancels its siblings. Tasks still running when
    the scope ends are cancelled, given ``grace`` seconds, and then
    reported as DeadlineExceeded (or CancelledError for an outer cancel).

    Returns:
        TaskResult per task, in the order the tasks were given.
    """
    group = scope.child(name=scope.name)
    executor, futures = _start(tasks, group, "collect")
    try:
        _, pending = _drive(futures, group, grace, eager=False)
        results: Dict[str, TaskResult] = {}
        for fut, name in futures.items():
            if fut in pending:
                results[name] = TaskResult(name=name, error=group.error(name))
                continue
            exc = fut.exception()
            if exc is not None:
                results[name] = TaskResult(name=name, error=exc)
            else:
                results[name] = TaskResult(name=name, value=fut.result())
        return results
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
