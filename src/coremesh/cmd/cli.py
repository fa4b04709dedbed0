"""Command-line interface for coremesh.

This module provides the main command-line interface, handling:
- Command-line argument parsing
- Logging setup for a run
- Loading and validating the stored run configuration
- Signal handling for a clean stop
- Error reporting and exit codes

The CLI is built using Typer and provides commands for:
- Running the core proxies and the edge proxy (``run``)
- Showing the endpoint the system proxy would point at (``endpoint``)
- Printing the version (``version``)

Example:
    # Run from command line:
    $ coremesh run --conf-dir ~/.v2n_coremesh
"""

import signal
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console

from coremesh import __version__
from coremesh.core.config import build_process_specs, load_run_config, validate_for_run
from coremesh.core.exceptions import ConfigError, SystemProxyError
from coremesh.core.lib.system_proxy import detect_endpoint
from coremesh.core.runner import RunController
from coremesh.core.utils.log_config import DEFAULT_CONF_DIR, configure_console, configure_file_logging
from coremesh.core.utils.prompt import EndpointUI, show_run_summary

console = Console()
app = typer.Typer(help="Run local proxy cores behind an Xray edge proxy and set the system proxy")

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(controller: RunController) -> dict:
    """Route stop signals to ``controller.cancel``; returns the previous handlers."""
    previous = {}
    for signum in STOP_SIGNALS:
        previous[signum] = signal.signal(signum, lambda _signum, _frame: controller.cancel())
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


@app.command(name="version")
def show_version():
    """Show version information."""
    console.print(f"[cyan]coremesh v{__version__}[/cyan]")


@app.command(name="run")
def run(
    conf_dir: Path = typer.Option(DEFAULT_CONF_DIR, "--conf-dir", "-c", help="Configuration directory"),
    state_file: Path | None = typer.Option(
        None, "--state-file", help="Run configuration file (default: <conf-dir>/coremesh.state.json)"
    ),
    asset_dir: Path | None = typer.Option(
        None, "--asset-dir", help="Xray geo asset directory (default: inferred from the xray binary)"
    ),
    debug: bool = typer.Option(
        default=False,
        help="Enable debug logging",
    ),
):
    """Start the cores and the edge proxy and point the system proxy at it."""
    if debug:
        configure_console("DEBUG")
    log_path = configure_file_logging(conf_dir)
    logger.info(f"command=run conf_dir={conf_dir}")
    logger.debug(f"log file: {log_path}")

    try:
        cfg = load_run_config(conf_dir, state_file)
        validate_for_run(cfg)
    except ConfigError as e:
        logger.error(f"load run config failed: {e}")
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e

    cores, edge = build_process_specs(cfg, asset_dir)
    controller = RunController(cores, edge, on_running=show_run_summary)
    console.print(f"[bold green]Starting {len(cores)} core(s) and {edge.name}...")

    previous = _install_signal_handlers(controller)
    try:
        result = controller.run()
    finally:
        _restore_signal_handlers(previous)

    if not result.ok:
        console.print(f"[red]Error: {result.error}")
        raise typer.Exit(1)
    console.print(f"[yellow]Stopped ({result.reason})")


@app.command(name="endpoint")
def show_endpoint(
    conf_dir: Path = typer.Option(DEFAULT_CONF_DIR, "--conf-dir", "-c", help="Configuration directory"),
    config: Path | None = typer.Option(None, "--config", help="Xray config to inspect instead of the stored one"),
):
    """Show the edge proxy endpoint the system proxy would point at."""
    try:
        config_path = str(config) if config is not None else load_run_config(conf_dir).app.generated_xray_config
        endpoint = detect_endpoint(config_path)
    except (ConfigError, SystemProxyError) as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e

    EndpointUI(endpoint, config_path).show()


if __name__ == "__main__":
    app()
