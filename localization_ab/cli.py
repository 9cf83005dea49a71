"""
Command‑line interface for the localization experiment backend.

Examples
--------
    abctl serve --payload-dir payloads --write-timeout 10
    abctl assign payloads user-123
    abctl loadtest --mode saturation --duration 60
    abctl allocation --users 100 --requests 5 --concurrency 10
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import typer
from pydantic import ValidationError

from localization_ab import api, payload_store
from localization_ab.allocation import generate_user_ids, run_allocation_test
from localization_ab.config import MIB, AllocationTestConfig, LoadTestConfig, ServerSettings
from localization_ab.loadtest import LoadStats, check_health, run_load_test
from localization_ab.progress import ProgressMonitor
from localization_ab.report import (
    RULE,
    format_allocation_summary,
    format_load_config,
    format_load_summary,
    render_allocation_markdown,
    render_load_markdown,
    write_report,
)
from localization_ab.stats import AtomicCounter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Typer application instance
app = typer.Typer(
    add_completion=False,
    help="Deterministic payload assignment service and its load tools.",
)


class Mode(str, Enum):
    NORMAL = "normal"
    SATURATION = "saturation"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def _validated(factory: Callable[..., T], *args: Any, **values: Any) -> T:
    """Build a settings model; report bad option values and exit *1*."""
    try:
        return factory(*args, **values)
    except ValidationError as exc:
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            typer.echo(f"Invalid value for {field}: {error['msg']}", err=True)
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", envvar="HOST", help="Bind address"),
    port: int = typer.Option(3000, envvar="PORT", help="Listen port"),
    payload_dir: str = typer.Option("payloads", envvar="PAYLOAD_DIR", help="Directory of payload JSON files"),
    read_timeout: float = typer.Option(5.0, envvar="READ_TIMEOUT", help="Seconds to receive a request body"),
    write_timeout: float = typer.Option(10.0, envvar="WRITE_TIMEOUT", help="Seconds to send a response"),
    idle_timeout: float = typer.Option(30.0, envvar="IDLE_TIMEOUT", help="Keep‑alive idle seconds"),
    max_connections: int = typer.Option(10_000, envvar="MAX_CONNS", help="Concurrent connection ceiling"),
    max_body_size: int = typer.Option(1 * MIB, envvar="BODY_LIMIT", help="Largest request body in bytes"),
    log_level: str = typer.Option("info", envvar="LOG_LEVEL"),
) -> None:
    """Run the experiment service; exit *1* if no payload can be loaded."""
    settings = _validated(
        ServerSettings,
        host=host,
        port=port,
        payload_dir=payload_dir,
        read_timeout=read_timeout,
        write_timeout=write_timeout,
        idle_timeout=idle_timeout,
        max_connections=max_connections,
        max_body_size=max_body_size,
        log_level=log_level,
    )
    _configure_logging(settings.log_level)
    try:
        api.serve(settings)
    except payload_store.BootFailure as exc:
        logger.error("boot failed: %s", exc)
        raise typer.Exit(code=1)


@app.command()
def assign(
    payload_dir: str = typer.Argument(..., help="Directory of payload JSON files"),
    user_id: str = typer.Argument(..., help="User identifier to bucket"),
) -> None:
    """Print the payload name *user_id* is assigned to, without a server."""
    try:
        store = payload_store.build(payload_dir)
    except payload_store.BootFailure as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    typer.echo(store.variant_for(user_id).name)


@app.command()
def loadtest(
    url: str = typer.Option("http://localhost:3000", help="Server URL"),
    fast: Optional[int] = typer.Option(None, help="Number of fast clients"),
    slow: Optional[int] = typer.Option(None, help="Number of slow clients"),
    requests: Optional[int] = typer.Option(None, help="Requests per client"),
    slow_speed: Optional[int] = typer.Option(None, help="Slow client download speed in bytes/sec"),
    duration: float = typer.Option(30.0, help="Test duration in seconds"),
    mode: Mode = typer.Option(Mode.NORMAL, help="'normal' (all fast) or 'saturation' (slow clients first)"),
    hog_test: bool = typer.Option(False, "--hog-test", help="Start slow clients first and measure fast client impact"),
    output: Optional[str] = typer.Option(None, help="Also write a Markdown report here"),
    log_level: str = typer.Option("warning", envvar="LOG_LEVEL"),
) -> None:
    """Drive fast and slow synthetic clients and report latency percentiles."""
    _configure_logging(log_level)
    config = _validated(
        LoadTestConfig.for_mode,
        mode.value,
        server_url=url,
        fast_clients=fast,
        slow_clients=slow,
        requests_per_client=requests,
        slow_download_speed=slow_speed,
        duration=duration,
        hog_test=hog_test or None,  # the flag may only switch hog mode on
    )

    typer.echo(format_load_config(config))
    if not check_health(config.server_url):
        typer.echo("Server health check failed. Is the server running?", err=True)
        raise typer.Exit(code=1)

    stats = LoadStats()
    with ProgressMonitor(stats.progress_line, interval=2.0):
        result = run_load_test(config, stats)

    typer.echo(format_load_summary(result, config))
    if output:
        path = write_report(output, render_load_markdown(result, config))
        typer.echo(f"Report written to {path}")


@app.command()
def allocation(
    url: str = typer.Option("http://localhost:3000", help="Server URL"),
    users: int = typer.Option(100, help="Number of unique users to test"),
    requests: int = typer.Option(5, help="Requests per user"),
    concurrency: int = typer.Option(10, help="Number of concurrent workers"),
    output: str = typer.Option("allocation_test_results.md", help="Markdown report path"),
    log_level: str = typer.Option("warning", envvar="LOG_LEVEL"),
) -> None:
    """Verify every user keeps the same payload; exit *1* on any inconsistency."""
    _configure_logging(log_level)
    config = _validated(
        AllocationTestConfig,
        server_url=url,
        users=users,
        requests_per_user=requests,
        concurrency=concurrency,
        output=output,
    )

    typer.echo(RULE)
    typer.echo(f"Server URL: {config.server_url}")
    typer.echo(f"Users: {config.users}")
    typer.echo(f"Requests per user: {config.requests_per_user}")
    typer.echo(f"Concurrency: {config.concurrency}")
    typer.echo(f"Output file: {config.output}")
    typer.echo(RULE)

    if not check_health(config.server_url):
        typer.echo("Server health check failed. Is the server running?", err=True)
        raise typer.Exit(code=1)

    expected = config.users * config.requests_per_user
    completed = AtomicCounter()

    def on_progress(_done: int, _expected: int) -> None:
        completed.add()

    def render() -> str:
        n = completed.value
        return f"   Progress: {n}/{expected} ({n / expected * 100:.1f}%)"

    with ProgressMonitor(render, interval=0.5):
        results = run_allocation_test(
            config.server_url,
            generate_user_ids(config.users),
            config.requests_per_user,
            config.concurrency,
            timeout=config.timeout,
            on_progress=on_progress,
        )

    typer.echo(format_allocation_summary(results))
    path = write_report(config.output, render_allocation_markdown(results))
    typer.echo(f"Detailed results written to {path}")
    if not results.passed:
        raise typer.Exit(code=1)


# ``python -m localization_ab.cli`` entry‑point

def main() -> None:  # pragma: no cover
    """Entry‑point for the ``abctl`` script."""
    app()


if __name__ == "__main__":
    app()
