"""
Work queue and worker pool

Watch events and Management API triggers are turned into keys
(``namespace/name``) on a WorkQueue. The queue guarantees that a key is held
by at most one worker at a time: a key added while it is being processed is
marked dirty and handed out again once the running pass finishes. Failed
passes come back after an exponential backoff; forced requests jump the line.
"""

import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set

from .log import correlated, get_logger

logger = get_logger("scheduler")


@dataclass
class Request:
    """A unit of work handed to a worker"""
    key: str
    forced: bool = False
    rotate: bool = False


@dataclass
class Result:
    """What a pass asks the queue to do next"""
    requeue_after: Optional[float] = None
    failed: bool = False
    rotated: bool = False
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, resync: Optional[float] = None, rotated: bool = False) -> "Result":
        return cls(requeue_after=resync, rotated=rotated)

    @classmethod
    def retry(cls, error: BaseException) -> "Result":
        return cls(failed=True, error=error)

    @classmethod
    def halt(cls, error: Optional[BaseException] = None) -> "Result":
        """Stop processing the key until something new happens"""
        return cls(error=error)


class WorkQueue:
    """Per-key deduplicating queue with backoff, safe for concurrent use"""

    def __init__(self, backoff_min: float = 1.0, backoff_max: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._dirty: Dict[str, bool] = {}
        self._delayed: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._forced: Set[str] = set()
        self._rotations: Set[str] = set()
        self._shutdown = False

    # ---------------------------------------------------------------- intake

    def add(self, key: str, front: bool = False, forced: bool = False) -> bool:
        """
        Queue a key for reconciliation

        Args:
            key: Resource key
            front: Skip any pending backoff and go to the head of the queue
            forced: Mark the next pass as operator-triggered

        Returns:
            False if the queue is shut down
        """
        with self._cond:
            if self._shutdown:
                return False
            if forced:
                self._forced.add(key)
            if front:
                self._delayed.pop(key, None)

            if key in self._in_flight:
                self._dirty[key] = self._dirty.get(key, False) or front
                return True

            if key in self._queued:
                if front:
                    self._ready.remove(key)
                    self._ready.appendleft(key)
                return True

            if key in self._delayed:
                # Waiting out a backoff; only a front request overrides it
                return True

            self._push(key, front)
            return True

    def request_rotation(self, key: str) -> bool:
        """
        Queue a credential rotation for a key

        Returns:
            False when a pass for the key is in flight (the caller reports a
            conflict) or the queue is shut down
        """
        # Condition() wraps an RLock, so add() may re-enter it
        with self._cond:
            if self._shutdown or key in self._in_flight:
                return False
            self._rotations.add(key)
            return self.add(key, front=True, forced=True)

    def forget(self, key: str):
        """Drop all state for a key whose object no longer exists"""
        with self._cond:
            if key in self._queued:
                self._queued.discard(key)
                self._ready.remove(key)
            self._delayed.pop(key, None)
            self._failures.pop(key, None)
            self._dirty.pop(key, None)
            self._forced.discard(key)
            self._rotations.discard(key)

    def _push(self, key: str, front: bool):
        self._queued.add(key)
        if front:
            self._ready.appendleft(key)
        else:
            self._ready.append(key)
        self._cond.notify()

    # ---------------------------------------------------------------- output

    def _promote_due(self) -> Optional[float]:
        """Move delayed keys whose time has come; return seconds to the next one"""
        now = self._clock()
        next_due = None
        for key, ready_at in list(self._delayed.items()):
            if ready_at <= now:
                del self._delayed[key]
                if key in self._in_flight:
                    self._dirty.setdefault(key, False)
                elif key not in self._queued:
                    self._push(key, front=False)
            elif next_due is None or ready_at - now < next_due:
                next_due = ready_at - now
        return next_due

    def get(self, timeout: Optional[float] = None) -> Optional[Request]:
        """
        Take the next key, marking it in flight

        Returns:
            A Request, or None on timeout or shutdown
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_due = self._promote_due()
                if self._ready:
                    key = self._ready.popleft()
                    self._queued.discard(key)
                    self._in_flight.add(key)
                    forced = key in self._forced
                    self._forced.discard(key)
                    return Request(key=key, forced=forced, rotate=key in self._rotations)

                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str, result: Result):
        """
        Release a key after its pass

        Success resets the backoff and optionally schedules a resync; failure
        schedules a retry after the next backoff interval. A key that became
        dirty during the pass is queued again right away, unless the pass
        failed and the new request was not a forced one.
        """
        with self._cond:
            self._in_flight.discard(key)
            if result.rotated:
                self._rotations.discard(key)

            if result.failed:
                delay = self._next_backoff(key)
            else:
                self._failures.pop(key, None)
                delay = result.requeue_after

            if key in self._dirty:
                front = self._dirty.pop(key)
                if front or not result.failed:
                    self._delayed.pop(key, None)
                    self._push(key, front)
                    return

            if delay is not None and not self._shutdown:
                self._delayed[key] = self._clock() + delay
                self._cond.notify()

    def _next_backoff(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.backoff_min * (2 ** failures), self.backoff_max)

    # ----------------------------------------------------------------- state

    def is_in_flight(self, key: str) -> bool:
        with self._cond:
            return key in self._in_flight

    def is_pending(self, key: str) -> bool:
        with self._cond:
            return key in self._queued or key in self._delayed or key in self._dirty

    def rotation_pending(self, key: str) -> bool:
        with self._cond:
            return key in self._rotations

    def scheduled_in(self, key: str) -> Optional[float]:
        """Seconds until a delayed key becomes ready, None if not delayed"""
        with self._cond:
            ready_at = self._delayed.get(key)
            return None if ready_at is None else max(0.0, ready_at - self._clock())

    def failures(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def depth(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    def shut_down(self):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown


class Scheduler:
    """Bounded pool of worker threads draining a WorkQueue"""

    def __init__(self, queue: WorkQueue, handler: Callable[[Request], Result], workers: int = 4):
        self.queue = queue
        self.handler = handler
        self.workers = workers
        self._threads: List[threading.Thread] = []
        self._passes = itertools.count(1)
        self._halt = threading.Event()

    def start(self):
        for i in range(self.workers):
            thread = threading.Thread(target=self._work, name=f"reconcile-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Scheduler started with {self.workers} workers")

    @property
    def running(self) -> bool:
        return (not self._halt.is_set() and not self.queue.is_shut_down
                and any(t.is_alive() for t in self._threads))

    def _work(self):
        while not self._halt.is_set():
            request = self.queue.get(timeout=1.0)
            if request is None:
                if self.queue.is_shut_down:
                    return
                continue

            with correlated(f"{request.key}#{next(self._passes)}"):
                try:
                    result = self.handler(request)
                except Exception as e:
                    logger.error(f"Unexpected error reconciling {request.key}: {e}", exc_info=True)
                    result = Result.retry(e)
                self.queue.done(request.key, result)
                if result.failed:
                    logger.info(f"Requeued {request.key} in {self.queue.scheduled_in(request.key)}s "
                                f"(failure {self.queue.failures(request.key)})")

    def stop(self, timeout: float = 30.0, shut_down_queue: bool = True):
        """
        Stop taking work and wait for running passes to finish

        Args:
            timeout: Seconds to wait for the workers
            shut_down_queue: Also refuse new keys; False keeps the queue
                filling so a later scheduler can pick up where this one left off
        """
        self._halt.set()
        if shut_down_queue:
            self.queue.shut_down()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning(f"Workers still running after {timeout}s: {', '.join(alive)}")
        else:
            logger.info("Scheduler stopped")
