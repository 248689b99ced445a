"""
Background execution of pipeline work on a thread pool.

Each task reports progress and exactly one terminal event (success, failure
or cancelled) to its listener. Cancellation is cooperative: the task's result
future resolves immediately and the running function is abandoned the next
time it reports progress.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, fields, replace
import itertools
import logging
import threading
from typing import Any, Callable, Iterable, Literal, Optional, Sequence

from .dot_pattern import DotPattern
from .error_reporter import ErrorReporter
from .errors import TaskCancelledError
from .image_converter import convert_image
from .logging_utils import log_once
from .params import ConversionParams, Model3DParams
from .pipeline import build_model
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

EventKind = Literal["progress", "success", "failure", "cancelled"]


@dataclass(frozen=True)
class TaskEvent:
    task_id: str
    kind: EventKind
    progress: int = 0
    result: Any = None
    error: Optional[BaseException] = None


EventListener = Callable[[TaskEvent], None]


class _Task:
    def __init__(self, task_id: str, listener: Optional[EventListener]):
        self.task_id = task_id
        self.listener = listener
        self.cancel_event = threading.Event()
        self.result: Future = Future()
        self.result.set_running_or_notify_cancel()
        self.work: Optional[Future] = None
        self.done = False


class TaskRunner:
    """
    Thread pool wrapper keyed by task id.

    ``submit`` calls ``fn(progress, *args)``; ``progress(percent)`` emits a
    progress event and raises ``TaskCancelledError`` once the task has been
    cancelled. The terminal event is delivered before the result future
    resolves.
    """

    def __init__(self, max_workers: Optional[int] = None, *, reporter: Optional[ErrorReporter] = None):
        self.max_workers = DEFAULTS.max_workers if max_workers is None else int(max_workers)
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.reporter = reporter
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dotmesh")
        self._tasks: dict[str, _Task] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, task: _Task, event: TaskEvent) -> None:
        if task.listener is None:
            return
        try:
            task.listener(event)
        except Exception:
            log_once(
                _LOGGER,
                f"listener:{task.task_id}",
                logging.WARNING,
                "Task listener for %s raised",
                task.task_id,
                exc_info=True,
            )

    def _finish(self, task: _Task) -> bool:
        """Mark ``task`` terminal; False when another path already did."""
        with self._lock:
            if task.done:
                return False
            task.done = True
            if self._tasks.get(task.task_id) is task:
                del self._tasks[task.task_id]
            return True

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        task_id: str,
        fn: Callable[..., Any],
        *args: Any,
        on_event: Optional[EventListener] = None,
    ) -> Future:
        task_id = str(task_id)
        task = _Task(task_id, on_event)
        with self._lock:
            if task_id in self._tasks:
                raise ValueError(f"Task already running: {task_id}")
            self._tasks[task_id] = task

        def progress(value: float) -> None:
            if task.cancel_event.is_set():
                raise TaskCancelledError(task_id)
            pct = int(max(0, min(100, round(float(value)))))
            self._emit(task, TaskEvent(task_id, "progress", progress=pct))

        def run() -> None:
            try:
                if task.cancel_event.is_set():
                    return
                result = fn(progress, *args)
            except Exception as e:
                if isinstance(e, TaskCancelledError) and task.cancel_event.is_set():
                    # cancel() already resolved the future and emitted the event.
                    return
                if not self._finish(task):
                    return
                if self.reporter is not None:
                    self.reporter.report(e, {"task_id": task_id})
                else:
                    _LOGGER.error("Task %s failed: %s", task_id, e, exc_info=True)
                self._emit(task, TaskEvent(task_id, "failure", error=e))
                task.result.set_exception(e)
                return
            if not self._finish(task):
                return
            self._emit(task, TaskEvent(task_id, "success", progress=100, result=result))
            task.result.set_result(result)

        try:
            task.work = self._executor.submit(run)
        except RuntimeError:
            with self._lock:
                self._tasks.pop(task_id, None)
            raise
        _LOGGER.debug("Submitted task %s", task_id)
        return task.result

    def submit_mesh_generation(
        self,
        task_id: str,
        pattern: DotPattern,
        params: Optional[Model3DParams] = None,
        *,
        on_event: Optional[EventListener] = None,
    ) -> Future:
        return self.submit(task_id, _build_task, pattern, params, on_event=on_event)

    def submit_image_conversion(
        self,
        task_id: str,
        pixels: Any,
        params: Optional[ConversionParams] = None,
        *,
        on_event: Optional[EventListener] = None,
    ) -> Future:
        return self.submit(task_id, _convert_task, pixels, params, on_event=on_event)

    # ------------------------------------------------------------------
    # Cancellation and lifecycle
    # ------------------------------------------------------------------

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(str(task_id))
        if task is None:
            return False
        task.cancel_event.set()
        if not self._finish(task):
            return False
        if task.work is not None:
            task.work.cancel()
        self._emit(task, TaskEvent(task.task_id, "cancelled"))
        task.result.set_exception(TaskCancelledError(task.task_id))
        _LOGGER.info("Cancelled task %s", task.task_id)
        return True

    def cancel_all(self) -> int:
        return sum(1 for task_id in self.active_tasks() if self.cancel(task_id))

    def active_tasks(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def shutdown(self, wait: bool = True, *, cancel_pending: bool = False) -> None:
        if cancel_pending:
            self.cancel_all()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "TaskRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True, cancel_pending=exc_type is not None)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def run_batches(
        self,
        items: Iterable[Any],
        fn: Callable[[Any], Any],
        batch_size: Optional[int] = None,
    ) -> list["BatchResult"]:
        """
        Apply ``fn`` to every item, at most ``batch_size`` in flight at a time.

        A failing item records its error (and reports it) without aborting
        the other items. Results keep the input order.
        """
        size = DEFAULTS.batch_size if batch_size is None else int(batch_size)
        if size < 1:
            raise ValueError("batch_size must be >= 1")

        results: list[BatchResult] = []
        indexed = list(enumerate(items))
        for start in range(0, len(indexed), size):
            batch = indexed[start : start + size]
            futures = [(i, item, self._executor.submit(fn, item)) for i, item in batch]
            wait([f for _, _, f in futures])
            for i, item, f in futures:
                error = f.exception()
                if error is not None:
                    if self.reporter is not None:
                        self.reporter.report(error, {"batch_index": i})
                    else:
                        _LOGGER.warning("Batch item %d failed: %s", i, error)
                    results.append(BatchResult(i, item, None, error))
                else:
                    results.append(BatchResult(i, item, f.result(), None))
            _LOGGER.debug("Batch %d-%d done", start, start + len(batch) - 1)
        return results


@dataclass(frozen=True)
class BatchResult:
    index: int
    item: Any
    result: Any
    error: Optional[BaseException]

    @property
    def ok(self) -> bool:
        return self.error is None


def _build_task(progress, pattern: DotPattern, params: Optional[Model3DParams]):
    return build_model(pattern, params, progress=progress)


def _convert_task(progress, pixels, params: Optional[ConversionParams]):
    return convert_image(pixels, params, progress=progress)


def parameter_grid(base: Any, **variations: Sequence[Any]) -> list[Any]:
    """
    Every combination of ``variations`` applied to the dataclass ``base``.

    ``parameter_grid(Model3DParams(), cube_size=[1, 2], spacing=[0, 0.5])``
    yields four parameter sets.
    """
    names = {f.name for f in fields(base)}
    unknown = sorted(set(variations) - names)
    if unknown:
        raise ValueError(f"Unknown parameter(s): {', '.join(unknown)}")
    if not variations:
        return [base]
    keys = list(variations)
    return [
        replace(base, **dict(zip(keys, combo)))
        for combo in itertools.product(*(list(variations[k]) for k in keys))
    ]
