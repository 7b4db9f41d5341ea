"""Chunked, checkpointed and pausable processing sessions."""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from harvester.checkpoint import (
    CheckpointError,
    CheckpointNotFoundError,
    CheckpointStore,
)
from harvester.control import ControlStore
from harvester.discover_sources import EnumerationError, ScanResult, SourceEnumerator
from harvester.extractor import Extractor, NewsMLExtractor
from harvester.logging_utils import get_pipeline_logger
from harvester.orphan_media import process_orphan_media
from harvester.progress import Listener, ProgressReporter, build_progress_payload
from harvester.relocation import relocate_asset
from harvester.schema import (
    RESUMABLE_STATUSES,
    Checkpoint,
    CumulativeStats,
    EventType,
    InvalidTransitionError,
    ProcessingConfig,
    ProcessingSession,
    ProgressEvent,
    RelocationFailure,
    SessionStatus,
    TaskResult,
    count_chunks,
    utc_now,
)
from harvester.session_store import SessionStore
from harvester.sink import CsvSink, SinkError, failure_sink
from harvester.worker_pool import Relocator, WorkerPool

controller_logger = get_pipeline_logger("chunks")

FAILURE_PREVIEW_LIMIT = 50
DEFAULT_POLL_INTERVAL = 0.1
CLIENT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

EnumeratorFactory = Callable[
    [ProcessingConfig, httpx.Client | None, Callable[[str], None] | None], Any
]


class FatalError(Exception):
    """A coordinator-level failure that ends the session as failed."""


class ResumeError(Exception):
    """Raised when a session cannot be resumed."""


@dataclass
class SessionOutcome:
    session_id: str
    status: SessionStatus
    stats: CumulativeStats
    current_chunk: int
    total_chunks: int
    output_path: str = ""
    failure_output_path: str = ""
    error_message: str | None = None


def new_session_id() -> str:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"session_{stamp}_{uuid.uuid4().hex[:6]}"


def _default_enumerator(
    config: ProcessingConfig,
    client: httpx.Client | None,
    on_progress: Callable[[str], None] | None,
) -> SourceEnumerator:
    return SourceEnumerator(
        target_extensions=config.target_extensions,
        max_depth=config.max_depth,
        max_remote_files=config.max_remote_files,
        client=client,
        on_progress=on_progress,
    )


@dataclass
class _ChunkSummary:
    delta: CumulativeStats
    records: list[dict[str, Any]]
    failures: list[RelocationFailure]
    matched_assets: list[str]


def summarize_results(
    results: Sequence[TaskResult], track_assets: bool = False
) -> _ChunkSummary:
    """Fold one chunk's task results into a stats delta and sink rows."""
    records = [
        result.record
        for result in results
        if result.succeeded and result.record is not None
    ]
    failures = [
        result.relocation_failure
        for result in results
        if result.relocation_failure is not None
    ]
    matched: list[str] = []
    if track_assets:
        for result in results:
            record = result.record or {}
            if record.get("imageExists") == "Yes" and record.get("imagePath"):
                matched.append(str(record["imagePath"]))

    delta = CumulativeStats(
        processed=len(results),
        successful=sum(1 for result in results if result.succeeded),
        errored=sum(1 for result in results if result.error is not None),
        filtered=sum(1 for result in results if result.filtered_out),
        relocated=sum(1 for result in results if result.relocated),
        relocation_failures=len(failures),
        records_written=len(records),
    )
    return _ChunkSummary(delta, records, failures, matched)


class ChunkController:
    """Drive a session chunk by chunk through the worker pool.

    The checkpoint is written after every chunk and at every pause or stop,
    before control returns to the caller. The control signal is polled before
    each chunk and during the wait between chunks.
    """

    def __init__(
        self,
        *,
        checkpoints: CheckpointStore,
        control: ControlStore,
        sessions: SessionStore | None = None,
        extractor: Extractor | None = None,
        enumerator_factory: EnumeratorFactory | None = None,
        relocator: Relocator | None = None,
        client: httpx.Client | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        base_dir: Path | None = None,
    ) -> None:
        self.checkpoints = checkpoints
        self.control = control
        self.sessions = sessions
        self.extractor = extractor
        self.enumerator_factory = enumerator_factory or _default_enumerator
        self.relocator = relocator
        self.client = client
        self.poll_interval = poll_interval
        self.base_dir = base_dir

    # Public entry points -------------------------------------------------

    def start(self, config: ProcessingConfig) -> Iterator[ProgressEvent]:
        """Run a fresh session in the background and stream its events."""
        return self._stream(lambda reporter: self._start_session(config, reporter))

    def resume(self, ref: str | Checkpoint) -> Iterator[ProgressEvent]:
        """Continue a paused, interrupted or crashed session in the background."""
        checkpoint = self._load_for_resume(ref)
        return self._stream(
            lambda reporter: self._resume_session(checkpoint, reporter)
        )

    def run(
        self, config: ProcessingConfig, on_event: Listener | None = None
    ) -> SessionOutcome:
        reporter = self._reporter(on_event)
        return self._start_session(config, reporter)

    def run_resume(
        self, ref: str | Checkpoint, on_event: Listener | None = None
    ) -> SessionOutcome:
        checkpoint = self._load_for_resume(ref)
        reporter = self._reporter(on_event)
        return self._resume_session(checkpoint, reporter)

    def interrupt_paused(self) -> list[str]:
        """Turn paused checkpoints into interrupted ones.

        A stop request only reaches a live coordinator, so a session that is
        already paused is moved to interrupted here instead. Returns the ids
        that changed.
        """
        changed: list[str] = []
        for session_id in self.checkpoints.list_sessions():
            try:
                checkpoint = self.checkpoints.load(session_id)
            except CheckpointError as exc:
                controller_logger.warning("Skipping checkpoint %s: %s", session_id, exc)
                continue
            if checkpoint.status is not SessionStatus.PAUSED:
                continue
            self.checkpoints.save(checkpoint.with_status(SessionStatus.INTERRUPTED))
            self._update_session(session_id, status=SessionStatus.INTERRUPTED)
            controller_logger.info("Paused session %s is now interrupted", session_id)
            changed.append(session_id)
        return changed

    # Session setup -------------------------------------------------------

    @staticmethod
    def _reporter(on_event: Listener | None) -> ProgressReporter:
        reporter = ProgressReporter(buffer=False)
        if on_event is not None:
            reporter.subscribe(on_event)
        return reporter

    def _stream(
        self, job: Callable[[ProgressReporter], SessionOutcome]
    ) -> Iterator[ProgressEvent]:
        reporter = ProgressReporter()

        def guarded() -> None:
            try:
                job(reporter)
            except Exception as exc:
                controller_logger.exception("Coordinator crashed")
                reporter.emit(EventType.ERROR, {"message": str(exc)})

        thread = threading.Thread(
            target=guarded, name="harvest-coordinator", daemon=True
        )
        thread.start()

        def iterate() -> Iterator[ProgressEvent]:
            yield from reporter.stream()
            thread.join()

        return iterate()

    def _load_for_resume(self, ref: str | Checkpoint) -> Checkpoint:
        if isinstance(ref, Checkpoint):
            checkpoint = ref
        else:
            try:
                checkpoint = self.checkpoints.load(ref)
            except CheckpointNotFoundError as exc:
                raise ResumeError(str(exc)) from exc
            except CheckpointError as exc:
                raise ResumeError(f"Cannot resume {ref}: {exc}") from exc
        if checkpoint.status not in RESUMABLE_STATUSES:
            raise ResumeError(
                f"Session {checkpoint.session_id} is {checkpoint.status.value} "
                "and cannot be resumed"
            )
        return checkpoint

    def _start_session(
        self, config: ProcessingConfig, reporter: ProgressReporter
    ) -> SessionOutcome:
        session_id = new_session_id()
        output_path = config.resolve_output_path(self.base_dir)
        failure_path = config.resolve_failure_output_path(self.base_dir)
        stats = CumulativeStats()

        try:
            self.control.reset()
            reporter.emit(
                EventType.START,
                {
                    "session_id": session_id,
                    "root": config.root,
                    "mode": "remote" if config.is_remote else "local",
                    "output_path": str(output_path),
                    "resumed": False,
                },
            )
            self._record_session(
                ProcessingSession(
                    id=session_id,
                    config=config,
                    output_path=str(output_path),
                    failure_output_path=str(failure_path),
                )
            )
            client = self._client_for(config)
            try:
                scan = self._scan(config, client, reporter)
            finally:
                self._release_client(client)
        except Exception as exc:
            return self._fail(session_id, None, stats, exc, reporter)

        if not scan.sources:
            return self._fail(
                session_id,
                None,
                stats,
                EnumerationError(f"No source files found under {config.root}"),
                reporter,
            )

        checkpoint = Checkpoint(
            session_id=session_id,
            config=config,
            sources=scan.sources,
            total_chunks=count_chunks(len(scan.sources), config.chunk_size),
            chunk_size=config.chunk_size,
            output_path=str(output_path),
            failure_output_path=str(failure_path),
            media_files=scan.media_files,
            media_counts_by_extension=scan.media_counts_by_extension,
            scan_warnings=scan.warnings,
        )
        try:
            self.checkpoints.save(checkpoint)
            CsvSink(output_path).initialize()
            relocation = config.filters.relocation
            if config.filters.enabled and relocation.active:
                failure_sink(failure_path).initialize()
        except (CheckpointError, SinkError) as exc:
            return self._fail(session_id, checkpoint, stats, exc, reporter)

        self._update_session(
            session_id,
            total=len(scan.sources),
            total_chunks=checkpoint.total_chunks,
        )
        reporter.log(
            f"Found {len(scan.sources)} source file(s); processing in "
            f"{checkpoint.total_chunks} chunk(s) of up to {config.chunk_size}"
        )
        return self._process(checkpoint, reporter, [])

    def _resume_session(
        self, checkpoint: Checkpoint, reporter: ProgressReporter
    ) -> SessionOutcome:
        session_id = checkpoint.session_id
        checkpoint = checkpoint.with_status(SessionStatus.RUNNING, paused_at=None)

        preview: list[RelocationFailure] = []
        existing = self._get_session(session_id)
        if existing is None:
            self._record_session(
                ProcessingSession(
                    id=session_id,
                    config=checkpoint.config,
                    total=len(checkpoint.sources),
                    progress=checkpoint.stats,
                    current_chunk=checkpoint.current_chunk_index,
                    total_chunks=checkpoint.total_chunks,
                    output_path=checkpoint.output_path,
                    failure_output_path=checkpoint.failure_output_path,
                    started_at=checkpoint.started_at,
                )
            )
        else:
            preview = list(existing.failure_preview)
            self._update_session(session_id, status=SessionStatus.RUNNING)

        try:
            self.control.reset()
            self.checkpoints.save(checkpoint)
            CsvSink(checkpoint.output_path).ensure_initialized()
        except Exception as exc:
            return self._fail(session_id, checkpoint, checkpoint.stats, exc, reporter)

        reporter.emit(
            EventType.START,
            {
                "session_id": session_id,
                "root": checkpoint.config.root,
                "mode": "remote" if checkpoint.config.is_remote else "local",
                "output_path": checkpoint.output_path,
                "resumed": True,
                "current_chunk": checkpoint.current_chunk_index + 1,
                "total_chunks": checkpoint.total_chunks,
                "processed": checkpoint.stats.processed,
            },
        )
        controller_logger.info(
            "Resuming %s at chunk %d/%d",
            session_id,
            checkpoint.current_chunk_index + 1,
            checkpoint.total_chunks,
        )
        return self._process(checkpoint, reporter, preview)

    def _scan(
        self,
        config: ProcessingConfig,
        client: httpx.Client | None,
        reporter: ProgressReporter,
    ) -> ScanResult:
        enumerator = self.enumerator_factory(config, client, reporter.log)
        reporter.log(f"Scanning {config.root}")
        scan = enumerator.scan(config.root, config.is_remote)
        for warning in scan.warnings:
            reporter.log(warning)
        return scan

    def _client_for(self, config: ProcessingConfig) -> httpx.Client | None:
        if self.client is not None or not config.is_remote:
            return self.client
        return httpx.Client(timeout=CLIENT_TIMEOUT, follow_redirects=True)

    def _release_client(self, client: httpx.Client | None) -> None:
        if client is not None and client is not self.client:
            client.close()

    # Chunk loop ----------------------------------------------------------

    def _process(
        self,
        checkpoint: Checkpoint,
        reporter: ProgressReporter,
        preview: list[RelocationFailure],
    ) -> SessionOutcome:
        config = checkpoint.config
        client = self._client_for(config)
        extractor = self.extractor or NewsMLExtractor(client)
        try:
            pool = WorkerPool(
                extractor,
                config.filters,
                concurrency=config.num_workers,
                task_timeout=config.task_timeout,
                source_root=config.root,
                relocator=self.relocator,
                client=client,
            )
            sink = CsvSink(checkpoint.output_path)
            failures = failure_sink(checkpoint.failure_output_path)
            total = len(checkpoint.sources)

            while not checkpoint.is_finished:
                signal = self.control.get_signal()
                if signal.should_stop:
                    return self._halt(checkpoint, SessionStatus.INTERRUPTED, reporter)
                if signal.is_paused:
                    return self._halt(checkpoint, SessionStatus.PAUSED, reporter)

                checkpoint = self._run_chunk(
                    checkpoint, pool, sink, failures, preview, reporter, total
                )

                if not checkpoint.is_finished and config.pause_between_chunks > 0:
                    self._wait_between_chunks(config.pause_between_chunks)

            if config.include_orphan_media and not config.is_remote:
                checkpoint = self._process_orphans(
                    checkpoint, sink, failures, preview, reporter
                )
            return self._complete(checkpoint, reporter, preview)
        except Exception as exc:
            return self._fail(
                checkpoint.session_id, checkpoint, checkpoint.stats, exc, reporter
            )
        finally:
            if self.extractor is None:
                extractor.close()
            self._release_client(client)

    def _run_chunk(
        self,
        checkpoint: Checkpoint,
        pool: WorkerPool,
        sink: CsvSink,
        failures: CsvSink,
        preview: list[RelocationFailure],
        reporter: ProgressReporter,
        total: int,
    ) -> Checkpoint:
        config = checkpoint.config
        index = checkpoint.current_chunk_index
        chunk = checkpoint.chunk(index)
        reporter.log(
            f"Processing chunk {index + 1}/{checkpoint.total_chunks} "
            f"({len(chunk)} file(s))"
        )
        chunk_start = time.time()

        partial: list[TaskResult] = []

        def on_result(result: TaskResult) -> None:
            partial.append(result)
            if len(partial) % config.progress_every or len(partial) == len(chunk):
                return
            running = checkpoint.stats.merged(summarize_results(partial).delta)
            reporter.emit(
                EventType.PROGRESS,
                build_progress_payload(
                    running,
                    total,
                    current_chunk=index + 1,
                    total_chunks=checkpoint.total_chunks,
                    session_id=checkpoint.session_id,
                ),
            )

        results = pool.run(chunk, on_result=on_result)
        summary = summarize_results(results, track_assets=not config.is_remote)

        sink.append_many(summary.records)
        if summary.failures:
            failures.ensure_initialized()
            failures.append_many(failure.as_row() for failure in summary.failures)
            room = FAILURE_PREVIEW_LIMIT - len(preview)
            if room > 0:
                preview.extend(summary.failures[:room])

        checkpoint = checkpoint.model_copy(
            update={
                "stats": checkpoint.stats.merged(summary.delta),
                "current_chunk_index": index + 1,
                "matched_assets": checkpoint.matched_assets + summary.matched_assets,
            }
        )
        try:
            self.checkpoints.save(checkpoint)
        except CheckpointError as exc:
            raise FatalError(str(exc)) from exc

        controller_logger.info(
            "Chunk %d/%d done in %.2fs: %d processed, %d ok, %d errors, %d filtered",
            index + 1,
            checkpoint.total_chunks,
            time.time() - chunk_start,
            summary.delta.processed,
            summary.delta.successful,
            summary.delta.errored,
            summary.delta.filtered,
        )
        self._update_session(
            checkpoint.session_id,
            progress=checkpoint.stats,
            current_chunk=checkpoint.current_chunk_index,
            failure_preview=list(preview),
        )
        reporter.emit(
            EventType.CHUNK,
            {
                "session_id": checkpoint.session_id,
                "chunk": index + 1,
                "total_chunks": checkpoint.total_chunks,
                "chunk_size": len(chunk),
                "chunk_processed": summary.delta.processed,
                "chunk_successful": summary.delta.successful,
                "chunk_errors": summary.delta.errored,
                "chunk_filtered": summary.delta.filtered,
                "chunk_relocated": summary.delta.relocated,
            },
        )
        reporter.emit(
            EventType.PROGRESS,
            build_progress_payload(
                checkpoint.stats,
                total,
                current_chunk=checkpoint.current_chunk_index + 1,
                total_chunks=checkpoint.total_chunks,
                session_id=checkpoint.session_id,
            ),
        )
        return checkpoint

    def _wait_between_chunks(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self.control.get_signal().requested:
                return
            time.sleep(min(self.poll_interval, remaining))

    def _process_orphans(
        self,
        checkpoint: Checkpoint,
        sink: CsvSink,
        failures: CsvSink,
        preview: list[RelocationFailure],
        reporter: ProgressReporter,
    ) -> Checkpoint:
        config = checkpoint.config
        result = process_orphan_media(
            config.root,
            checkpoint.media_files,
            checkpoint.matched_assets,
            config.filters,
            relocator=self.relocator or relocate_asset,
            on_log=reporter.log,
        )
        sink.append_many(result.records)
        if result.failures:
            failures.ensure_initialized()
            failures.append_many(failure.as_row() for failure in result.failures)
            room = FAILURE_PREVIEW_LIMIT - len(preview)
            if room > 0:
                preview.extend(result.failures[:room])
        for error in result.errors:
            reporter.log(error)

        delta = CumulativeStats(
            records_written=len(result.records),
            relocation_failures=len(result.failures),
            orphan_considered=result.considered,
            orphan_recorded=result.recorded,
            orphan_filtered=result.filtered,
            orphan_relocated=result.relocated,
        )
        reporter.log(
            f"Images without XML: {result.considered} considered, "
            f"{result.recorded} recorded, {result.filtered} filtered out, "
            f"{result.relocated} relocated"
        )
        return checkpoint.model_copy(update={"stats": checkpoint.stats.merged(delta)})

    # Terminal transitions ------------------------------------------------

    def _halt(
        self,
        checkpoint: Checkpoint,
        status: SessionStatus,
        reporter: ProgressReporter,
    ) -> SessionOutcome:
        checkpoint = checkpoint.with_status(status, paused_at=utc_now())
        try:
            self.checkpoints.save(checkpoint)
        except CheckpointError as exc:
            raise FatalError(str(exc)) from exc

        current_chunk = checkpoint.current_chunk_index + 1
        self._update_session(
            checkpoint.session_id,
            status=status,
            progress=checkpoint.stats,
            current_chunk=checkpoint.current_chunk_index,
        )
        verb = "stopped" if status is SessionStatus.INTERRUPTED else "paused"
        message = (
            f"Processing {verb} before chunk {current_chunk}/"
            f"{checkpoint.total_chunks}; resume with session {checkpoint.session_id}"
        )
        controller_logger.info(message)
        payload = build_progress_payload(
            checkpoint.stats,
            len(checkpoint.sources),
            current_chunk=current_chunk,
            total_chunks=checkpoint.total_chunks,
            session_id=checkpoint.session_id,
        )
        payload["message"] = message
        event_type = (
            EventType.SHUTDOWN
            if status is SessionStatus.INTERRUPTED
            else EventType.PAUSED
        )
        reporter.emit(event_type, payload)
        return SessionOutcome(
            session_id=checkpoint.session_id,
            status=status,
            stats=checkpoint.stats,
            current_chunk=current_chunk,
            total_chunks=checkpoint.total_chunks,
            output_path=checkpoint.output_path,
            failure_output_path=checkpoint.failure_output_path,
        )

    def _complete(
        self,
        checkpoint: Checkpoint,
        reporter: ProgressReporter,
        preview: list[RelocationFailure],
    ) -> SessionOutcome:
        try:
            self.checkpoints.delete(checkpoint.session_id)
        except OSError as exc:
            controller_logger.warning(
                "Could not remove checkpoint for %s: %s", checkpoint.session_id, exc
            )

        stats = checkpoint.stats
        failure_output = (
            checkpoint.failure_output_path if stats.relocation_failures else ""
        )
        self._update_session(
            checkpoint.session_id,
            status=SessionStatus.COMPLETED,
            progress=stats,
            current_chunk=checkpoint.total_chunks,
            failure_preview=list(preview),
            ended_at=utc_now(),
        )
        controller_logger.info(
            "Session %s completed: %d processed, %d written, %d errors",
            checkpoint.session_id,
            stats.processed,
            stats.records_written,
            stats.errored,
        )
        reporter.emit(
            EventType.COMPLETE,
            {
                "session_id": checkpoint.session_id,
                "stats": stats.model_dump(),
                "total": len(checkpoint.sources),
                "output_path": checkpoint.output_path,
                "failure_output_path": failure_output,
                "failure_preview": [failure.as_row() for failure in preview],
                "media_counts_by_extension": checkpoint.media_counts_by_extension,
            },
        )
        return SessionOutcome(
            session_id=checkpoint.session_id,
            status=SessionStatus.COMPLETED,
            stats=stats,
            current_chunk=checkpoint.total_chunks,
            total_chunks=checkpoint.total_chunks,
            output_path=checkpoint.output_path,
            failure_output_path=failure_output,
        )

    def _fail(
        self,
        session_id: str,
        checkpoint: Checkpoint | None,
        stats: CumulativeStats,
        exc: BaseException,
        reporter: ProgressReporter,
    ) -> SessionOutcome:
        if isinstance(exc, EnumerationError):
            controller_logger.error("Session %s failed: %s", session_id, exc)
        else:
            controller_logger.exception("Session %s failed", session_id)

        if checkpoint is not None:
            try:
                self.checkpoints.save(checkpoint.with_status(SessionStatus.FAILED))
            except (CheckpointError, InvalidTransitionError) as save_exc:
                controller_logger.error(
                    "Could not mark checkpoint %s as failed: %s", session_id, save_exc
                )

        message = str(exc) or exc.__class__.__name__
        self._update_session(
            session_id,
            status=SessionStatus.FAILED,
            progress=stats,
            error_message=message,
            ended_at=utc_now(),
        )
        reporter.emit(
            EventType.ERROR,
            {"session_id": session_id, "message": message, "stats": stats.model_dump()},
        )
        return SessionOutcome(
            session_id=session_id,
            status=SessionStatus.FAILED,
            stats=stats,
            current_chunk=(checkpoint.current_chunk_index + 1) if checkpoint else 0,
            total_chunks=checkpoint.total_chunks if checkpoint else 0,
            output_path=checkpoint.output_path if checkpoint else "",
            failure_output_path=checkpoint.failure_output_path if checkpoint else "",
            error_message=message,
        )

    # Session history -----------------------------------------------------

    def _record_session(self, session: ProcessingSession) -> None:
        if self.sessions is None:
            return
        try:
            self.sessions.create(session)
        except OSError as exc:
            controller_logger.warning(
                "Could not record session %s: %s", session.id, exc
            )

    def _get_session(self, session_id: str) -> ProcessingSession | None:
        if self.sessions is None:
            return None
        return self.sessions.get(session_id)

    def _update_session(self, session_id: str, **changes: Any) -> None:
        if self.sessions is None:
            return
        try:
            self.sessions.update(session_id, changes)
        except InvalidTransitionError as exc:
            controller_logger.error(
                "Rejected history update for %s: %s", session_id, exc
            )
        except OSError as exc:
            controller_logger.warning(
                "Could not update session %s: %s", session_id, exc
            )
