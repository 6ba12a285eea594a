"""
Resizable worker pools that run one pipeline stage each.

A :class:`WorkerPool` pulls items from its inbox, runs them through a
per-worker handler and pushes non-None results to its outbox. The pool size
is a target that can change while the run is active: a supervisor thread
spawns workers until the target is reached, and surplus workers retire
after finishing the item they hold.

Once the inbox reports :class:`~sprinting_boxes.errors.QueueClosed` and the
last worker has exited, the pool closes its outbox so shutdown propagates
downstream.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Optional, Protocol

from ..errors import Backpressure, Cancelled, QueueClosed, StageFailure
from .queues import StageQueue
from .telemetry import ProgressTracker

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
HandlerFactory = Callable[[], Handler]
ErrorCallback = Callable[[StageFailure], None]


class Inbox(Protocol):
    """
    Anything a pool can pull work from (:class:`StageQueue`, :class:`FrameFeed`).
    """

    def pop(self, timeout: Optional[float] = None) -> Any:
        ...


def frame_index_of(item: Any) -> Optional[int]:
    """
    Frame index carried by a pipeline item (the item itself for the reader's indices).
    """
    if isinstance(item, int):
        return item
    index = getattr(item, "frame_index", None)
    return int(index) if index is not None else None


class WorkerPool:
    """
    Pool of threads running one stage.

    Args:
        name: Stage name used for telemetry, logs and thread names.
        handler_factory: Builds one handler per worker. Handlers may expose a
            ``close()`` method, called when their worker exits.
        inbox: Source of items.
        outbox: Destination of results, or None for the last stage.
        tracker: Progress tracker updated after every item.
        initial_workers: Starting worker target.
        max_workers: Upper bound for :meth:`resize`.
        abort: Event set when the run fails; workers exit as soon as they see it.
        on_error: Called once per failing item with the wrapped exception.
        push_timeout_s: Push timeout before a blocked worker re-checks ``abort``.
        pop_timeout_s: Pop timeout before an idle worker re-checks for retirement.
        supervisor_interval_s: Reconciliation period of the supervisor.
    """

    def __init__(
        self,
        name: str,
        handler_factory: HandlerFactory,
        inbox: Inbox,
        outbox: Optional[StageQueue[Any]],
        tracker: ProgressTracker,
        initial_workers: int = 1,
        max_workers: int = 1,
        abort: Optional[threading.Event] = None,
        on_error: Optional[ErrorCallback] = None,
        push_timeout_s: float = 0.5,
        pop_timeout_s: float = 0.2,
        supervisor_interval_s: float = 0.05,
    ) -> None:
        self.name = name
        self.max_workers = max(1, int(max_workers))
        self._handler_factory = handler_factory
        self._inbox = inbox
        self._outbox = outbox
        self._tracker = tracker
        self._abort = abort or threading.Event()
        self._on_error = on_error
        self._push_timeout = push_timeout_s
        self._pop_timeout = pop_timeout_s
        self._interval = supervisor_interval_s

        self._lock = threading.Lock()
        self._target = min(max(1, int(initial_workers)), self.max_workers)
        self._alive = 0
        self._spawned = 0
        self._input_done = False
        self._finished = threading.Event()
        self._supervisor: Optional[threading.Thread] = None

    @property
    def target(self) -> int:
        with self._lock:
            return self._target

    @property
    def alive(self) -> int:
        with self._lock:
            return self._alive

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def start(self) -> None:
        if self._supervisor is not None:
            return
        self._supervisor = threading.Thread(
            target=self._supervise, name=f"{self.name}-supervisor", daemon=True
        )
        self._supervisor.start()

    def resize(self, delta: int) -> int:
        """
        Change the worker target by ``delta``, clamped to ``[1, max_workers]``.

        Returns:
            The new target.
        """
        with self._lock:
            self._target = min(max(1, self._target + int(delta)), self.max_workers)
            target = self._target
        logger.info("Stage %s worker target -> %d", self.name, target)
        return target

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the pool to finish. Returns False on timeout.
        """
        return self._finished.wait(timeout)

    def _supervise(self) -> None:
        while not self._finished.is_set():
            to_spawn = 0
            with self._lock:
                if self._input_done or self._abort.is_set():
                    finish = self._should_finish_locked()
                    if finish:
                        break
                else:
                    to_spawn = max(0, self._target - self._alive)
                    self._alive += to_spawn
            for _ in range(to_spawn):
                self._spawn()
            if to_spawn:
                with self._lock:
                    self._tracker.set_workers(self.name, self._alive)
            self._finished.wait(self._interval)
        if not self._finished.is_set():
            self._finish()

    def _spawn(self) -> None:
        self._spawned += 1
        thread = threading.Thread(
            target=self._work,
            name=f"{self.name}-worker-{self._spawned}",
            daemon=True,
        )
        thread.start()

    def _should_finish_locked(self) -> bool:
        return self._alive == 0 and (self._input_done or self._abort.is_set())

    def _try_retire(self) -> bool:
        with self._lock:
            if self._alive > self._target:
                self._alive -= 1
                return True
            return False

    def _push(self, item: Any) -> bool:
        assert self._outbox is not None
        while True:
            if self._abort.is_set():
                return False
            try:
                self._outbox.push(item, timeout=self._push_timeout)
                return True
            except Backpressure:
                continue
            except QueueClosed:
                return False

    def _work(self) -> None:
        retired = False
        handler: Optional[Handler] = None
        try:
            try:
                handler = self._handler_factory()
            except Exception as exc:
                self._fail(None, exc)
                return
            while not self._abort.is_set():
                if self._try_retire():
                    retired = True
                    break
                try:
                    item = self._inbox.pop(timeout=self._pop_timeout)
                except queue.Empty:
                    continue
                except QueueClosed:
                    with self._lock:
                        self._input_done = True
                    break

                frame_index = frame_index_of(item)
                started = time.perf_counter()
                try:
                    output = handler(item)
                except Cancelled:
                    logger.debug("Stage %s cancelled at frame %s", self.name, frame_index)
                    break
                except Exception as exc:
                    self._fail(frame_index, exc)
                    break
                elapsed = time.perf_counter() - started

                if output is not None and self._outbox is not None:
                    if not self._push(output):
                        break
                self._tracker.record(self.name, elapsed, self.alive)
        finally:
            close = getattr(handler, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:
                    logger.exception("Stage %s handler failed to close", self.name)
            self._worker_exited(retired)

    def _worker_exited(self, retired: bool) -> None:
        with self._lock:
            if not retired:
                self._alive -= 1
            self._tracker.set_workers(self.name, self._alive)
            finish = self._should_finish_locked() and not self._finished.is_set()
        if finish:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            if self._finished.is_set():
                return
            self._finished.set()
            completed = self._input_done and not self._abort.is_set()
        if self._outbox is not None:
            self._outbox.close()
        if completed:
            self._tracker.mark_stage_done(self.name)
        logger.debug("Stage %s finished (completed=%s)", self.name, completed)

    def _fail(self, frame_index: Optional[int], exc: BaseException) -> None:
        failure = StageFailure(self.name, frame_index, exc)
        logger.error("%s", failure, exc_info=(type(exc), exc, exc.__traceback__))
        if self._on_error is not None:
            self._on_error(failure)
        else:
            self._abort.set()
