"""
Command line launcher for the Task Board API server.

Options override the TASKBOARD_* environment; the chosen database path and
log level are exported back into the environment so the app lifespan opens
the same database the launcher seeded.
"""

import logging
import os
import socket
from dataclasses import replace

import click
import uvicorn

from .config import LOG_LEVELS, Settings
from .database import TaskBoardDatabase
from .events import HttpEventPublisher
from .importer import import_board_from_file
from .service import TaskService

logger = logging.getLogger(__name__)


def check_port_available(host: str, port: int) -> bool:
    """Return True if nothing is listening on host:port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def seed_project(settings: Settings, project_file: str) -> dict:
    """
    Import a YAML board into the configured database before serving.

    When TASKBOARD_EVENTS_URL is set, the import announces its changes to
    the listener at that address.
    """
    publisher = HttpEventPublisher(settings.events_url) if settings.events_url else None
    database = TaskBoardDatabase(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)
    try:
        service = TaskService(database, publisher, notify_retries=settings.notify_retries,
                              notify_base_delay=settings.notify_base_delay)
        return import_board_from_file(service, project_file)
    finally:
        database.close()


@click.command()
@click.option("--host", default=None, help="Interface to bind (default: TASKBOARD_HOST or 127.0.0.1)")
@click.option("--port", type=int, default=None, help="Port to bind (default: TASKBOARD_PORT or 8000)")
@click.option("--db-path", default=None, help="SQLite database file (default: TASKBOARD_DATABASE_PATH)")
@click.option("--project", "project_file", type=click.Path(exists=True, dir_okay=False),
              help="YAML board to import before the server starts")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None)
def main(host, port, db_path, project_file, log_level):
    """Start the Task Board API server."""
    settings = Settings.from_env()
    overrides = {
        "host": host,
        "port": port,
        "database_path": db_path,
        "log_level": log_level.upper() if log_level else None,
    }
    settings = replace(settings, **{key: value for key, value in overrides.items() if value is not None})

    logging.getLogger("taskboard").setLevel(settings.log_level)
    os.environ["TASKBOARD_DATABASE_PATH"] = settings.database_path
    os.environ["TASKBOARD_LOG_LEVEL"] = settings.log_level

    if project_file:
        try:
            stats = seed_project(settings, project_file)
        except ValueError as e:
            raise click.ClickException(str(e))
        except Exception as e:
            raise click.ClickException(f"Failed to initialize database: {e}")

        click.echo(f"Imported project {stats['project_id']}: "
                   f"{stats['tasks_created']} tasks, {stats['relations_created']} relations")
        for error in stats["errors"]:
            click.echo(f"  skipped: {error}", err=True)

    if not check_port_available(settings.host, settings.port):
        raise click.ClickException(f"Port conflict: {settings.host}:{settings.port} is already in use")

    click.echo(f"Task Board API on http://{settings.host}:{settings.port} (database: {settings.database_path})")
    uvicorn.run("taskboard.api:app", host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
