"""
Shared fixtures for the task board test suite.

Provides an isolated temporary SQLite database per test, a service wired to
a RecordingPublisher, and a seeded board with a four-column workflow plus a
second role-less project for cross-project checks.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict

import pytest

from taskboard.database import TaskBoardDatabase
from taskboard.events import RecordingPublisher
from taskboard.models import CreateTaskRequest, Task
from taskboard.service import TaskService


def remove_database_files(db_path: str) -> None:
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def temp_db_path():
    fd, db_path = tempfile.mkstemp(suffix=".db", prefix="test_taskboard_")
    os.close(fd)
    yield db_path
    remove_database_files(db_path)


@pytest.fixture
def db(temp_db_path):
    database = TaskBoardDatabase(temp_db_path)
    yield database
    database.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(db, publisher):
    return TaskService(db, publisher, notify_base_delay=0)


@dataclass
class Board:
    """Ids of a seeded board: Backlog -> Todo (ready) -> In Progress -> Done (completed)."""

    project_id: int
    backlog: int
    todo: int
    doing: int
    done: int
    bug_label: int
    ui_label: int
    other_project_id: int
    other_column: int
    other_label: int
    next_position: Dict[int, int] = field(default_factory=dict)


@pytest.fixture
def board(db):
    project_id = db.create_project("Main", "Primary test project")
    backlog = db.create_column(project_id, "Backlog")
    todo = db.create_column(project_id, "Todo", holds_ready_tasks=True)
    doing = db.create_column(project_id, "In Progress", holds_in_progress_tasks=True)
    done = db.create_column(project_id, "Done", holds_completed_tasks=True)
    bug_label = db.create_label(project_id, "bug", "#EF4444")
    ui_label = db.create_label(project_id, "ui", "#22C55E")

    other_project_id = db.create_project("Other")
    other_column = db.create_column(other_project_id, "Inbox")
    other_label = db.create_label(other_project_id, "bug")

    return Board(
        project_id=project_id,
        backlog=backlog,
        todo=todo,
        doing=doing,
        done=done,
        bug_label=bug_label,
        ui_label=ui_label,
        other_project_id=other_project_id,
        other_column=other_column,
        other_label=other_label,
    )


@pytest.fixture
def make_task(service, board) -> Callable[..., Task]:
    """Create a task at the next free position (1, 2, ...) of a column; defaults to Todo."""

    def _make(title: str, column_id: int = None, **kwargs) -> Task:
        column_id = column_id or board.todo
        position = kwargs.pop("position", None)
        if position is None:
            position = board.next_position.get(column_id, 1)
        board.next_position[column_id] = max(board.next_position.get(column_id, 1), position + 1)
        return service.create_task(CreateTaskRequest(
            title=title, column_id=column_id, position=position, **kwargs))

    return _make


@pytest.fixture
def positions(db) -> Callable[[int], list]:
    """Task (id, position) pairs of a column ordered by position."""

    def _positions(column_id: int):
        with db.read() as cursor:
            cursor.execute("SELECT id, position FROM tasks WHERE column_id = ? ORDER BY position",
                           (column_id,))
            return [(row["id"], row["position"]) for row in cursor.fetchall()]

    return _positions
