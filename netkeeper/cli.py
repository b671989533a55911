# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Command line entry point (serve / init-db / migrate).
# Path: /netkeeper/cli.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

import logging
from pathlib import Path

import click

from netkeeper import config
from netkeeper.storage import SqliteStore, StorageError, migrate_from_json


def _data_dir(value) -> Path:
    return Path(value) if value else config.DATA_DIR


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose):
    """NetKeeper network documentation service."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


@main.command()
@click.option("--host", default=config.BIND_HOST, show_default=True, help="Bind address")
@click.option("--port", default=config.BIND_PORT, show_default=True, type=int, help="Bind port")
@click.option("--data-dir", type=click.Path(file_okay=False), help="Data directory")
@click.option("--backend", type=click.Choice(["json", "sqlite"]), help="Storage backend")
@click.option("--monitor/--no-monitor", default=None, help="Start the background monitor")
def serve(host, port, data_dir, backend, monitor):
    """Run the WebUI and REST API."""
    from netkeeper.app import APP, run_server

    if data_dir:
        APP.config["DATA_DIR"] = Path(data_dir)
    if backend:
        APP.config["BACKEND"] = backend
    run_server(host=host, port=port, start_monitor=monitor)


@main.command("init-db")
@click.option("--data-dir", type=click.Path(file_okay=False), help="Data directory")
def init_db(data_dir):
    """Create the SQLite schema (safe to run repeatedly)."""
    db_path = _data_dir(data_dir) / config.SQLITE_DB_NAME
    try:
        SqliteStore(db_path)
    except StorageError as e:
        raise click.ClickException(str(e))
    click.echo(f"Database ready: {db_path}")


@main.command()
@click.option("--data-dir", type=click.Path(file_okay=False), help="Data directory")
@click.option("--json-path", type=click.Path(dir_okay=False), help=f"Source file (default <data-dir>/{config.JSON_DB_NAME})")
@click.option("--db-path", type=click.Path(dir_okay=False), help=f"Target database (default <data-dir>/{config.SQLITE_DB_NAME})")
def migrate(data_dir, json_path, db_path):
    """Copy db.json into the SQLite database."""
    base = _data_dir(data_dir)
    json_path = Path(json_path) if json_path else base / config.JSON_DB_NAME
    db_path = Path(db_path) if db_path else base / config.SQLITE_DB_NAME
    try:
        counts = migrate_from_json(json_path, db_path)
    except (StorageError, ValueError) as e:
        raise click.ClickException(f"Migration failed: {e}")
    if not counts:
        click.echo(f"No {json_path.name} file found. Nothing to migrate.")
        return
    for name, n in counts.items():
        click.echo(f"{name}: {n}")
    click.echo(f"Migration completed: {db_path}")


if __name__ == "__main__":
    main()
