"""Command line interface for the racetimer package."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .exceptions import PersistenceError, PortUnavailableError
from .persistence import SqlitePersistence
from .reporting import export_nodes
from .transponder.config import load_config

logger = logging.getLogger(__name__)

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Gate-crossing race timer.",
)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")) -> None:
    _setup_logging(verbose)


@app.command()
def serve(
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial device of the transponder."),
    baudrate: Optional[int] = typer.Option(None, "--baud", help="Serial baudrate."),
    config_path: Path = typer.Option(Path("config/timer.json"), "--config", "-c", help="Path to timer config."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set detector.threshold=4 --set server.port=3001",
    ),
    simulate: bool = typer.Option(False, "--simulate", help="Use a simulated transponder instead of the serial port."),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed for --simulate."),
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite database file."),
) -> None:
    """Open the transponder, start the worker and serve the HTTP/WebSocket API."""

    from .server import serve as run_server

    overrides = list(override or [])
    if port is not None:
        overrides.append(f"serial.port={port}")
    if baudrate is not None:
        overrides.append(f"serial.baudrate={baudrate}")
    try:
        cfg = load_config(config_path, overrides or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if simulate:
        cfg.simulate = True
    if database is not None:
        cfg.database = database
    try:
        asyncio.run(run_server(cfg, seed=seed))
    except KeyboardInterrupt:
        logger.info("Stopping timer (Ctrl+C)")
    except (PortUnavailableError, PersistenceError) as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc


async def _load_nodes(db_path: Path, race_id: Optional[int]):
    async with SqlitePersistence(db_path) as store:
        return await store.list_nodes(race_id)


@app.command()
def export(
    db_path: Path = typer.Option(..., "--db", help="SQLite database file.", exists=True, readable=True),
    race_id: Optional[int] = typer.Option(None, "--race", help="Only export this race."),
    out: Path = typer.Option(Path("nodes.csv"), "--out", help="Output CSV file."),
) -> None:
    """Write stored gate crossings to CSV."""

    try:
        nodes = asyncio.run(_load_nodes(db_path, race_id))
    except PersistenceError as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc
    df = export_nodes(nodes, out)
    typer.echo(f"Wrote {len(df)} crossings to {out}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
