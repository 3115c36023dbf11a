"""Typer CLI entry point for submission-resilience."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from submission_resilience import __version__
from submission_resilience.api.server import run_server
from submission_resilience.config import Settings, format_validation_error
from submission_resilience.errors import ErrorCode, ErrorFilter, ErrorKind
from submission_resilience.exceptions import (
    InvalidOperationStateError,
    OperationNotFoundError,
)
from submission_resilience.health.models import HealthStatus
from submission_resilience.logging import configure_logging
from submission_resilience.recovery.models import OperationStatus
from submission_resilience.runtime import ResilienceRuntime


T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="submission-resilience",
    help="Retry, circuit breaking and health monitoring for unreliable integrations.",
    no_args_is_help=True,
)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]

_STATUS_STYLE = {
    HealthStatus.HEALTHY: "[green]healthy[/green]",
    HealthStatus.DEGRADED: "[yellow]degraded[/yellow]",
    HealthStatus.UNHEALTHY: "[red]unhealthy[/red]",
    HealthStatus.UNKNOWN: "[dim]unknown[/dim]",
}


def _load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _run(
    config_path: Path | None,
    action: Callable[[ResilienceRuntime], Awaitable[T]],
) -> T:
    """Build a runtime, run one admin action and release the store."""
    settings = _load_settings(config_path)
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
    )
    runtime = ResilienceRuntime.from_settings(settings)

    async def _main() -> T:
        try:
            return await action(runtime)
        finally:
            await runtime.handler.drain()
            await runtime.executor.drain()

    try:
        return asyncio.run(_main())
    except (OperationNotFoundError, InvalidOperationStateError) as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        runtime.store.dispose()


# ---------------------------------------------------------------------------
# Version callback
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]submission-resilience[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """submission-resilience global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def health(config: ConfigOption = None) -> None:
    """Probe every dependency once and print the result."""
    current = _run(config, lambda runtime: runtime.monitor.run_cycle())

    table = Table(title="System Health", show_lines=True)
    table.add_column("Component", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Latency", justify="right")
    table.add_column("Detail")
    for name, result in sorted(current.components.items()):
        table.add_row(
            name,
            _STATUS_STYLE[result.status],
            f"{result.latency_ms:.0f}ms",
            result.detail,
        )
    console.print(table)
    console.print(f"Overall: {_STATUS_STYLE[current.overall]}")

    if current.overall is HealthStatus.UNHEALTHY:
        raise typer.Exit(code=1)


@app.command()
def errors(
    kind: Annotated[
        ErrorKind | None, typer.Option("--kind", help="Only this error kind.")
    ] = None,
    code: Annotated[
        ErrorCode | None, typer.Option("--code", help="Only this error code.")
    ] = None,
    operation: Annotated[
        str | None, typer.Option("--operation", help="Only this operation name.")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", min=1, max=1000)] = 50,
    config: ConfigOption = None,
) -> None:
    """List unresolved errors, newest first."""
    error_filter = ErrorFilter(
        kind=kind, code=code, operation_name=operation, limit=limit
    )
    rows = _run(config, lambda runtime: runtime.admin.list_unresolved_errors(error_filter))
    if not rows:
        console.print("[green]No unresolved errors.[/green]")
        return

    table = Table(title="Unresolved Errors", show_lines=True)
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Code")
    table.add_column("Operation")
    table.add_column("Message")
    table.add_column("At")
    for error in rows:
        table.add_row(
            error.id,
            error.kind.value,
            error.code.value,
            str(error.context.get("operation_name", "-")),
            error.message,
            error.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def operations(
    status: Annotated[
        OperationStatus | None,
        typer.Option("--status", help="Only operations in this status."),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", min=1, max=1000)] = 50,
    config: ConfigOption = None,
) -> None:
    """List durable recovery operations."""
    rows = _run(
        config, lambda runtime: runtime.admin.list_recovery_operations(status, limit)
    )
    if not rows:
        console.print("[yellow]No recovery operations.[/yellow]")
        return

    table = Table(title="Recovery Operations", show_lines=True)
    table.add_column("ID", style="cyan")
    table.add_column("Operation")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    table.add_column("Updated")
    for op in rows:
        table.add_row(
            op.id,
            op.operation_name,
            op.status.value,
            f"{op.attempt_count}/{op.max_attempts}",
            op.last_error_id or "-",
            op.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def stats(
    hours: Annotated[
        int, typer.Option("--hours", min=1, help="Look-back window in hours.")
    ] = 24,
    config: ConfigOption = None,
) -> None:
    """Show retry and error statistics."""

    async def _collect(runtime: ResilienceRuntime) -> tuple[list[Any], list[Any]]:
        return (
            await runtime.admin.retry_statistics(hours),
            await runtime.admin.error_statistics(hours),
        )

    retry_rows, error_rows = _run(config, _collect)

    retry_table = Table(title=f"Retries (last {hours}h)", show_lines=True)
    retry_table.add_column("Operation", style="cyan")
    retry_table.add_column("Total", justify="right")
    retry_table.add_column("Succeeded", justify="right")
    retry_table.add_column("Failed", justify="right")
    retry_table.add_column("Avg attempts", justify="right")
    retry_table.add_column("Success rate", justify="right")
    for row in retry_rows:
        retry_table.add_row(
            row.operation_name,
            str(row.total),
            str(row.succeeded),
            str(row.failed),
            f"{row.average_attempts:.2f}",
            f"{row.success_rate:.1f}%",
        )
    console.print(retry_table)

    error_table = Table(title=f"Errors (last {hours}h)", show_lines=True)
    error_table.add_column("Kind", style="cyan")
    error_table.add_column("Code")
    error_table.add_column("Count", justify="right")
    error_table.add_column("Unresolved", justify="right")
    for row in error_rows:
        error_table.add_row(
            row.kind.value, row.code.value, str(row.count), str(row.unresolved_count)
        )
    console.print(error_table)


@app.command()
def breakers(config: ConfigOption = None) -> None:
    """Show circuit breaker states."""
    rows = _run(config, lambda runtime: runtime.admin.get_circuit_breaker_states())
    if not rows:
        console.print("[dim]No circuit breakers recorded.[/dim]")
        return

    table = Table(title="Circuit Breakers", show_lines=True)
    table.add_column("Operation", style="cyan")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    table.add_column("Successes", justify="right")
    table.add_column("Last transition")
    for state in rows:
        table.add_row(
            state.operation_name,
            state.state.value,
            f"{state.consecutive_failures}/{state.failure_threshold}",
            f"{state.consecutive_successes}/{state.success_threshold}",
            state.last_transition_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def resolve(
    error_id: Annotated[str, typer.Argument(help="Error id to mark resolved.")],
    config: ConfigOption = None,
) -> None:
    """Mark an error as resolved."""
    changed = _run(config, lambda runtime: runtime.admin.resolve_error(error_id))
    if changed:
        console.print(f"[green]Resolved[/green] {error_id}")
    else:
        console.print(f"[dim]{error_id} was already resolved.[/dim]")


@app.command()
def cancel(
    operation_id: Annotated[str, typer.Argument(help="Recovery operation id.")],
    config: ConfigOption = None,
) -> None:
    """Cancel a pending or failed recovery operation."""
    _run(config, lambda runtime: runtime.admin.cancel_operation(operation_id))
    console.print(f"[green]Cancelled[/green] {operation_id}")


@app.command()
def purge(config: ConfigOption = None) -> None:
    """Apply retention windows and abandon stale failed operations."""
    report = _run(config, lambda runtime: runtime.admin.purge_expired())
    console.print(
        f"Deleted [bold]{report.errors_deleted}[/bold] errors, "
        f"[bold]{report.operations_deleted}[/bold] operations, "
        f"[bold]{report.health_results_deleted}[/bold] health results; "
        f"abandoned [bold]{report.operations_abandoned}[/bold] operations, "
        f"released [bold]{report.operations_released}[/bold] stalled ones."
    )


@app.command()
def serve(
    port: Annotated[
        int,
        typer.Option("--port", help="Port to bind the FastAPI server."),
    ] = 8000,
    host: Annotated[
        str,
        typer.Option("--host", help="Host/interface to bind the FastAPI server."),
    ] = "0.0.0.0",
    config: ConfigOption = None,
) -> None:
    """Run the admin API server."""
    settings = _load_settings(config, api={"port": port, "host": host})
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
        service_name="submission-resilience",
    )
    run_server(settings)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
