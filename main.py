#!/usr/bin/env python3
"""Command-line entry point for the metadata harvester."""

from __future__ import annotations

import json
import logging
import signal
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from typing_extensions import Annotated

from harvester.checkpoint import CHECKPOINT_DIRNAME, CheckpointError, CheckpointStore
from harvester.chunk_controller import ChunkController, ResumeError
from harvester.config_utils import (
    ConfigError,
    build_processing_config,
    resolve_state_dir,
)
from harvester.control import CONTROL_FILENAME, ControlAction, ControlStore
from harvester.logging_utils import configure_logging
from harvester.schema import (
    CumulativeStats,
    EventType,
    ProgressEvent,
    TextOperator,
)
from harvester.session_store import HISTORY_FILENAME, SessionStore

app = typer.Typer(
    help="Harvest NewsML picture metadata into CSV with resumable chunks."
)
console = Console()
logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_HALTED = 2

_EXIT_CODES = {
    EventType.COMPLETE: EXIT_COMPLETED,
    EventType.ERROR: EXIT_FAILED,
    EventType.PAUSED: EXIT_HALTED,
    EventType.SHUTDOWN: EXIT_HALTED,
}

StateDirOption = Annotated[
    Path | None,
    typer.Option(
        "--state-dir",
        help="Directory for checkpoints, control and history "
        "(default: METADATA_HARVEST_STATE_DIR or data/).",
    ),
]


def _checkpoint_store(state_dir: Path) -> CheckpointStore:
    return CheckpointStore(state_dir / CHECKPOINT_DIRNAME)


def _control_store(state_dir: Path) -> ControlStore:
    return ControlStore(state_dir / CONTROL_FILENAME)


def _session_store(state_dir: Path) -> SessionStore:
    return SessionStore(state_dir / HISTORY_FILENAME)


def build_controller(state_dir: Path) -> ChunkController:
    return ChunkController(
        checkpoints=_checkpoint_store(state_dir),
        control=_control_store(state_dir),
        sessions=_session_store(state_dir),
    )


def parse_text_filter(raw: str) -> tuple[str, dict[str, str]]:
    """Parse ``FIELD:OPERATOR[:VALUE]`` into a text predicate entry."""
    parts = raw.split(":", 2)
    if len(parts) < 2 or not parts[0].strip():
        raise typer.BadParameter(
            f"Expected FIELD:OPERATOR[:VALUE], got {raw!r}", param_hint="--text-filter"
        )
    field_name, operator = parts[0].strip(), parts[1].strip()
    try:
        TextOperator(operator)
    except ValueError as exc:
        valid = ", ".join(item.value for item in TextOperator)
        raise typer.BadParameter(
            f"Unknown operator {operator!r}; expected one of {valid}",
            param_hint="--text-filter",
        ) from exc
    value = parts[2] if len(parts) == 3 else ""
    return field_name, {"operator": operator, "value": value}


def _load_filter_file(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            if path.suffix.lower() == ".json":
                data = json.load(handle)
            else:
                data = yaml.safe_load(handle)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise typer.BadParameter(
            f"Cannot read filter file {path}: {exc}", param_hint="--filters"
        ) from exc
    if not isinstance(data, dict):
        raise typer.BadParameter(
            f"Filter file {path} must contain a mapping", param_hint="--filters"
        )
    return data


def build_filter_overrides(
    *,
    filters_file: Path | None = None,
    min_width: int | None = None,
    min_height: int | None = None,
    min_file_size: int | None = None,
    max_file_size: int | None = None,
    allowed_types: str | None = None,
    text_filters: Iterable[str] = (),
    relocate_to: str | None = None,
    flat: bool = False,
) -> dict[str, Any] | None:
    """Collect filter options into a mapping; ``None`` when none were given."""
    overrides: dict[str, Any] = {}
    if filters_file is not None:
        overrides.update(_load_filter_file(filters_file))

    for key, value in (
        ("min_width", min_width),
        ("min_height", min_height),
        ("min_file_size", min_file_size),
        ("max_file_size", max_file_size),
    ):
        if value is not None:
            overrides[key] = value
    if allowed_types:
        overrides["allowed_file_types"] = allowed_types

    predicates = dict(overrides.get("text_predicates") or {})
    for raw in text_filters:
        field_name, predicate = parse_text_filter(raw)
        predicates[field_name] = predicate
    if predicates:
        overrides["text_predicates"] = predicates

    if relocate_to:
        overrides["relocation"] = {
            "enabled": True,
            "destination": relocate_to,
            "structure": "flat" if flat else "replicate",
        }

    if not overrides:
        return None
    overrides.setdefault("enabled", True)
    return overrides


def _stats_table(stats: CumulativeStats, title: str = "Session totals") -> Table:
    table = Table(title=title)
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    for name, value in stats.model_dump().items():
        table.add_row(name.replace("_", " "), str(value))
    return table


def render_event(event: ProgressEvent, out: Console = console) -> None:
    payload = event.payload or {}
    if event.type is EventType.START:
        verb = "Resuming" if payload.get("resumed") else "Starting"
        out.print(
            f"[bold]{verb} session {payload.get('session_id')}[/bold] "
            f"({payload.get('mode')}: {payload.get('root')})"
        )
    elif event.type is EventType.LOG:
        out.print(f"[dim]{escape(str(payload.get('message', '')))}[/dim]")
    elif event.type is EventType.PROGRESS:
        out.print(
            f"Progress: {payload.get('processed')}/{payload.get('total')} "
            f"({payload.get('percentage')}%) ok={payload.get('successful')} "
            f"errors={payload.get('errors')} filtered={payload.get('filtered')} "
            f"relocated={payload.get('relocated')}"
        )
    elif event.type is EventType.CHUNK:
        out.print(
            f"[cyan]Chunk {payload.get('chunk')}/{payload.get('total_chunks')}[/cyan] "
            f"done: {payload.get('chunk_successful')} ok, "
            f"{payload.get('chunk_errors')} errors, "
            f"{payload.get('chunk_filtered')} filtered"
        )
    elif event.type in (EventType.PAUSED, EventType.SHUTDOWN):
        out.print(f"[yellow]{escape(str(payload.get('message')))}[/yellow]")
    elif event.type is EventType.COMPLETE:
        out.print(f"[green]Session {payload.get('session_id')} completed[/green]")
        out.print(_stats_table(CumulativeStats.model_validate(payload["stats"])))
        out.print(f"Output: {payload.get('output_path')}")
        if payload.get("failure_output_path"):
            failure_output = payload["failure_output_path"]
            out.print(f"[yellow]Relocation failures: {failure_output}[/yellow]")
    elif event.type is EventType.ERROR:
        out.print(f"[red]Error: {escape(str(payload.get('message')))}[/red]")


def _install_stop_handlers(control: ControlStore) -> Callable[[], None]:
    """Turn SIGINT/SIGTERM into a stop request; returns a restore callback."""
    previous: dict[int, Any] = {}

    def handler(signum: int, _frame: Any) -> None:
        try:
            signal_name = signal.Signals(signum).name
        except ValueError:
            signal_name = str(signum)
        logger.info("Received signal %s; requesting stop", signal_name)
        console.print(
            "[yellow]Stop requested; finishing the current chunk...[/yellow]"
        )
        control.set_signal(ControlAction.STOP)

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not on the main thread; leave handlers alone.
            continue

    def restore() -> None:
        for signum, original in previous.items():
            signal.signal(signum, original)

    return restore


def _consume(events: Iterable[ProgressEvent], control: ControlStore) -> int:
    restore = _install_stop_handlers(control)
    exit_code = EXIT_FAILED
    try:
        for event in events:
            render_event(event)
            if event.is_terminal:
                exit_code = _EXIT_CODES[event.type]
    finally:
        restore()
    return exit_code


@app.callback()
def main(
    debug: Annotated[bool, typer.Option(help="Enable debug logging.")] = False,
    log_file: Annotated[
        str | None,
        typer.Option(
            help="Log file path (default: METADATA_HARVEST_LOG_FILE or "
            "metadata_harvest.log)."
        ),
    ] = None,
) -> None:
    configure_logging(
        level="DEBUG" if debug else None,
        log_file=log_file,
        console=False,
        force=True,
    )


@app.command()
def run(
    root: Annotated[
        str, typer.Argument(help="Local directory or http(s) listing URL.")
    ],
    output_file: Annotated[
        str | None, typer.Option(help="CSV file name.", rich_help_panel="Output")
    ] = None,
    output_folder: Annotated[
        str | None,
        typer.Option(help="Folder for the CSV output.", rich_help_panel="Output"),
    ] = None,
    chunk_size: Annotated[
        int | None, typer.Option(help="Sources per checkpointed chunk.")
    ] = None,
    pause_between_chunks: Annotated[
        float | None, typer.Option(help="Seconds to wait between chunks.")
    ] = None,
    num_workers: Annotated[
        int | None, typer.Option(help="Concurrent extraction workers.")
    ] = None,
    task_timeout: Annotated[
        float | None, typer.Option(help="Seconds before a single file times out.")
    ] = None,
    include_orphan_media: Annotated[
        bool | None,
        typer.Option(
            "--orphan-media/--no-orphan-media",
            help="Also record local images that no XML references.",
        ),
    ] = None,
    filters_file: Annotated[
        Path | None,
        typer.Option(
            "--filters",
            help="YAML or JSON file with filter criteria.",
            rich_help_panel="Filtering",
        ),
    ] = None,
    min_width: Annotated[
        int | None, typer.Option(rich_help_panel="Filtering")
    ] = None,
    min_height: Annotated[
        int | None, typer.Option(rich_help_panel="Filtering")
    ] = None,
    min_file_size: Annotated[
        int | None, typer.Option(rich_help_panel="Filtering")
    ] = None,
    max_file_size: Annotated[
        int | None, typer.Option(rich_help_panel="Filtering")
    ] = None,
    allowed_types: Annotated[
        str | None,
        typer.Option(
            help="Comma separated extensions, e.g. jpg,tif.",
            rich_help_panel="Filtering",
        ),
    ] = None,
    text_filter: Annotated[
        list[str] | None,
        typer.Option(
            help="FIELD:OPERATOR[:VALUE], e.g. creditline:notLike:stock.",
            rich_help_panel="Filtering",
        ),
    ] = None,
    relocate_to: Annotated[
        str | None,
        typer.Option(
            help="Copy passing images under this folder.",
            rich_help_panel="Relocation",
        ),
    ] = None,
    flat: Annotated[
        bool,
        typer.Option(
            help="Copy into one folder instead of replicating the tree.",
            rich_help_panel="Relocation",
        ),
    ] = False,
    config: Annotated[
        Path | None, typer.Option(help="YAML configuration file.")
    ] = None,
    state_dir: StateDirOption = None,
) -> None:
    """Start a new harvesting session."""
    filter_overrides = build_filter_overrides(
        filters_file=filters_file,
        min_width=min_width,
        min_height=min_height,
        min_file_size=min_file_size,
        max_file_size=max_file_size,
        allowed_types=allowed_types,
        text_filters=text_filter or [],
        relocate_to=relocate_to,
        flat=flat,
    )
    try:
        processing = build_processing_config(
            root,
            {
                "output_file": output_file,
                "output_folder": output_folder,
                "chunk_size": chunk_size,
                "pause_between_chunks": pause_between_chunks,
                "num_workers": num_workers,
                "task_timeout": task_timeout,
                "include_orphan_media": include_orphan_media,
                "filters": filter_overrides,
            },
            config,
        )
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_FAILED) from exc

    resolved_state = resolve_state_dir(state_dir)
    controller = build_controller(resolved_state)
    exit_code = _consume(controller.start(processing), controller.control)
    raise typer.Exit(code=exit_code)


@app.command()
def resume(
    session_id: Annotated[
        str | None,
        typer.Argument(help="Session to resume (default: most recent resumable)."),
    ] = None,
    state_dir: StateDirOption = None,
) -> None:
    """Resume a paused, stopped or crashed session from its checkpoint."""
    resolved_state = resolve_state_dir(state_dir)
    controller = build_controller(resolved_state)

    ref: Any = session_id
    if ref is None:
        ref = controller.checkpoints.latest_resumable()
        if ref is None:
            console.print("[yellow]No resumable session found.[/yellow]")
            raise typer.Exit(code=EXIT_FAILED)

    try:
        events = controller.resume(ref)
    except ResumeError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_FAILED) from exc
    raise typer.Exit(code=_consume(events, controller.control))


def _signal_command(action: ControlAction, state_dir: Path | None) -> None:
    store = _control_store(resolve_state_dir(state_dir))
    signal_state = store.set_signal(action)
    console.print(
        f"Control signal set to {action.value} "
        f"(paused={signal_state.is_paused}, stop={signal_state.should_stop})"
    )


@app.command()
def pause(state_dir: StateDirOption = None) -> None:
    """Ask the running session to pause at the next chunk boundary."""
    _signal_command(ControlAction.PAUSE, state_dir)


@app.command()
def stop(state_dir: StateDirOption = None) -> None:
    """Ask the running session to stop; paused sessions become interrupted."""
    _signal_command(ControlAction.STOP, state_dir)
    controller = build_controller(resolve_state_dir(state_dir))
    for session_id in controller.interrupt_paused():
        console.print(f"Session {session_id} moved from paused to interrupted")


@app.command()
def reset(state_dir: StateDirOption = None) -> None:
    """Clear any pending pause or stop request."""
    _signal_command(ControlAction.RESET, state_dir)


@app.command()
def status(state_dir: StateDirOption = None) -> None:
    """Show the control signal and resumable checkpoints."""
    resolved_state = resolve_state_dir(state_dir)
    signal_state = _control_store(resolved_state).get_signal()
    console.print(
        f"Control: paused={signal_state.is_paused} stop={signal_state.should_stop} "
        f"(updated {signal_state.updated_at.isoformat()})"
    )

    checkpoints = _checkpoint_store(resolved_state)
    session_ids = checkpoints.list_sessions()
    if not session_ids:
        console.print("No checkpoints on disk.")
        return

    table = Table(title="Checkpoints")
    for column in ("Session", "Status", "Chunk", "Processed", "Output"):
        table.add_column(column)
    for session_id in session_ids:
        try:
            checkpoint = checkpoints.load(session_id)
        except CheckpointError as exc:
            logger.warning("Unreadable checkpoint %s: %s", session_id, exc)
            table.add_row(session_id, "unreadable", "-", "-", "-")
            continue
        table.add_row(
            checkpoint.session_id,
            checkpoint.status.value,
            f"{checkpoint.current_chunk_index}/{checkpoint.total_chunks}",
            f"{checkpoint.stats.processed}/{len(checkpoint.sources)}",
            checkpoint.output_path,
        )
    console.print(table)


@app.command()
def sessions(
    limit: Annotated[int, typer.Option(help="Number of sessions to show.")] = 20,
    state_dir: StateDirOption = None,
) -> None:
    """List processing history, newest first."""
    history = _session_store(resolve_state_dir(state_dir)).list()
    if not history:
        console.print("No sessions recorded.")
        return

    table = Table(title="Sessions")
    for column in ("Session", "Status", "Processed", "Written", "Started"):
        table.add_column(column)
    for session in history[:limit]:
        table.add_row(
            session.id,
            session.status.value,
            f"{session.progress.processed}/{session.total}",
            str(session.progress.records_written),
            session.started_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@app.command()
def show(
    session_id: Annotated[str, typer.Argument(help="Session id.")],
    state_dir: StateDirOption = None,
) -> None:
    """Show one session's details."""
    session = _session_store(resolve_state_dir(state_dir)).get(session_id)
    if session is None:
        console.print(f"[red]Session {session_id} not found.[/red]")
        raise typer.Exit(code=EXIT_FAILED)

    console.print(f"[bold]{session.id}[/bold] {session.status.value}")
    if session.config is not None:
        console.print(f"Root: {session.config.root}")
    console.print(f"Output: {session.output_path}")
    console.print(f"Chunk: {session.current_chunk}/{session.total_chunks}")
    if session.error_message:
        console.print(f"[red]Error: {session.error_message}[/red]")
    console.print(_stats_table(session.progress))
    if session.failure_preview:
        table = Table(title="Relocation failures")
        for column in ("Image", "Reason", "Details"):
            table.add_column(column)
        for failure in session.failure_preview:
            table.add_row(failure.image_path, failure.reason, failure.details)
        console.print(table)


@app.command()
def delete(
    session_id: Annotated[str, typer.Argument(help="Session id.")],
    state_dir: StateDirOption = None,
) -> None:
    """Remove a session from history along with its checkpoint."""
    resolved_state = resolve_state_dir(state_dir)
    removed_history = _session_store(resolved_state).delete(session_id)
    removed_checkpoint = _checkpoint_store(resolved_state).delete(session_id)
    if not (removed_history or removed_checkpoint):
        console.print(f"[yellow]Session {session_id} not found.[/yellow]")
        raise typer.Exit(code=EXIT_FAILED)
    console.print(f"Deleted session {session_id}")


if __name__ == "__main__":
    app()
