from __future__ import annotations

import inspect
import itertools
import queue
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

import httpx

from harvester.extractor import ExtractionError, Extractor
from harvester.filters import evaluate
from harvester.logging_utils import get_pipeline_logger
from harvester.relocation import RelocationError, relocate_asset
from harvester.schema import (
    ErrorKind,
    FilterCriteria,
    RelocationConfig,
    RelocationFailure,
    SourceDescriptor,
    TaskResult,
)

pool_logger = get_pipeline_logger("worker")

Relocator = Callable[[str, str, RelocationConfig], Path]
ResultCallback = Callable[[TaskResult], None]

_RUNNING = "running"
_DONE = "done"
_EXPIRED = "expired"


class TaskTimeoutError(TimeoutError):
    """A task ran past its deadline."""


class TaskCancelled(TaskTimeoutError):
    """Raised inside a task once its cancellation token has been set."""


@dataclass
class _TaskState:
    index: int
    source: SourceDescriptor
    cancel: threading.Event = field(default_factory=threading.Event)
    status: str = _RUNNING


def _accepts_keyword(func: Callable[..., object], name: str) -> bool:
    try:
        parameters = inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
    return name in parameters or any(
        param.kind is inspect.Parameter.VAR_KEYWORD for param in parameters.values()
    )


class WorkerPool:
    """Run extract, filter and relocate over a batch with N worker threads.

    Each task gets a timer. When it fires the task is reported as timed out
    and its cancellation token is set; extractors that take ``should_abort``
    stop at their next checkpoint. The worker keeps its slot until the call
    actually returns, drops the late result and moves on to the next queued
    task, so no more than N extract calls are ever running. ``run`` is a
    barrier: it returns once every task has resolved and every worker thread
    has exited.
    """

    def __init__(
        self,
        extractor: Extractor,
        criteria: FilterCriteria,
        *,
        concurrency: int = 4,
        task_timeout: float = 30.0,
        source_root: str = "",
        relocator: Relocator | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if task_timeout <= 0:
            raise ValueError("task_timeout must be positive")
        self.extractor = extractor
        self.criteria = criteria
        self.concurrency = concurrency
        self.task_timeout = task_timeout
        self.source_root = source_root
        self.relocator: Relocator = relocator or partial(relocate_asset, client=client)
        self._pass_abort = _accepts_keyword(extractor.extract, "should_abort")
        self._worker_ids = itertools.count(1)

    def run(
        self,
        tasks: Sequence[SourceDescriptor],
        on_result: ResultCallback | None = None,
    ) -> list[TaskResult]:
        """Process ``tasks`` and return one result per task in input order."""
        if not tasks:
            return []

        pending: queue.Queue[_TaskState] = queue.Queue()
        resolved: queue.Queue[tuple[_TaskState, TaskResult]] = queue.Queue()
        state_lock = threading.Lock()
        for index, source in enumerate(tasks):
            pending.put(_TaskState(index=index, source=source))

        def expire(state: _TaskState) -> None:
            with state_lock:
                if state.status != _RUNNING:
                    return
                state.status = _EXPIRED
                state.cancel.set()
            message = str(
                TaskTimeoutError(
                    f"{state.source.locator} exceeded {self.task_timeout:.1f}s"
                )
            )
            pool_logger.warning("Task timed out: %s", message)
            resolved.put(
                (
                    state,
                    TaskResult(
                        locator=state.source.locator,
                        error=ErrorKind.TIMEOUT,
                        error_message=message,
                    ),
                )
            )

        def worker(worker_id: int) -> None:
            worker_logger = pool_logger.getChild(f"worker-{worker_id}")
            worker_logger.debug("Worker %d started", worker_id)
            while True:
                try:
                    state = pending.get_nowait()
                except queue.Empty:
                    break

                timer = threading.Timer(self.task_timeout, expire, args=(state,))
                timer.daemon = True
                timer.start()
                try:
                    result = self._process(state)
                except Exception as exc:
                    worker_logger.exception(
                        "Task crashed for %s", state.source.locator
                    )
                    result = TaskResult(
                        locator=state.source.locator,
                        error=ErrorKind.UNEXPECTED,
                        error_message=str(exc),
                    )
                finally:
                    timer.cancel()

                with state_lock:
                    expired = state.status == _EXPIRED
                    if not expired:
                        state.status = _DONE
                if expired:
                    worker_logger.debug(
                        "Dropping late result for %s", state.source.locator
                    )
                    continue
                resolved.put((state, result))
            worker_logger.debug("Worker %d stopped", worker_id)

        threads: list[threading.Thread] = []
        for _ in range(min(self.concurrency, len(tasks))):
            worker_id = next(self._worker_ids)
            thread = threading.Thread(
                target=worker,
                args=(worker_id,),
                name=f"harvest-worker-{worker_id}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        results: list[TaskResult | None] = [None] * len(tasks)
        remaining = len(tasks)
        while remaining:
            state, result = resolved.get()
            if results[state.index] is not None:
                continue
            results[state.index] = result
            remaining -= 1
            if on_result is not None:
                on_result(result)

        for thread in threads:
            if thread.is_alive():
                pool_logger.debug("Waiting for %s to finish", thread.name)
            thread.join()

        return [result for result in results if result is not None]

    def _check_abort(self, state: _TaskState) -> None:
        if state.cancel.is_set():
            raise TaskCancelled(f"{state.source.locator} was cancelled")

    def _process(self, state: _TaskState) -> TaskResult:
        locator = state.source.locator
        should_abort = partial(self._check_abort, state)
        try:
            if self._pass_abort:
                record = self.extractor.extract(locator, should_abort=should_abort)
            else:
                record = self.extractor.extract(locator)
        except TaskCancelled as exc:
            return TaskResult(
                locator=locator, error=ErrorKind.TIMEOUT, error_message=str(exc)
            )
        except ExtractionError as exc:
            pool_logger.warning("Extraction failed for %s: %s", locator, exc)
            return TaskResult(
                locator=locator, error=ErrorKind.EXTRACTION, error_message=str(exc)
            )
        except Exception as exc:
            pool_logger.exception("Unexpected error while extracting %s", locator)
            return TaskResult(
                locator=locator, error=ErrorKind.UNEXPECTED, error_message=str(exc)
            )

        if record is None:
            return TaskResult(
                locator=locator,
                error=ErrorKind.NO_RECORD,
                error_message="No record produced",
            )

        decision = evaluate(record, self.criteria)
        if not decision.passes:
            pool_logger.debug("Filtered out %s: %s", locator, decision.reason)
            return TaskResult(locator=locator, record=record, passed_filter=False)

        result = TaskResult(locator=locator, record=record, passed_filter=True)
        relocation = self.criteria.relocation
        if not (self.criteria.enabled and relocation.active):
            return result

        asset = str(record.get("imagePath") or "")
        if not asset or record.get("imageExists") == "No":
            return result
        if state.cancel.is_set():
            return result

        try:
            self.relocator(asset, self.source_root, relocation)
        except Exception as exc:
            if isinstance(exc, RelocationError):
                pool_logger.warning("Relocation failed for %s: %s", asset, exc)
            else:
                pool_logger.exception("Unexpected relocation error for %s", asset)
            result.relocation_failure = RelocationFailure(
                image_href=str(record.get("imageHref") or ""),
                image_path=asset,
                xml_path=str(record.get("xmlPath") or locator),
                reason="copy_failed",
                details=str(exc),
            )
            return result

        result.relocated = True
        return result
