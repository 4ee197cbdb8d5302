"""
Task Board Database Layer

SQLite storage for projects, columns, tasks, labels, task relations and
comments. Provides WAL-mode connection setup, schema creation with seeded
lookup tables, and a scoped transaction context manager that every
multi-statement service operation runs inside.
"""

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import (
    ColumnHasTasksError,
    ColumnNotFoundError,
    DuplicateLabelNameError,
    EmptyNameError,
    InvalidColorError,
    InvalidColumnIDError,
    InvalidLabelIDError,
    InvalidProjectIDError,
    LabelNotFoundError,
    NameTooLongError,
    ProjectHasTasksError,
    ProjectNotFoundError,
)
from .models import MAX_COLUMN_NAME_LENGTH, MAX_LABEL_NAME_LENGTH, MAX_PROJECT_NAME_LENGTH
from .queries import Queries

logger = logging.getLogger(__name__)

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def current_timestamp() -> str:
    """UTC timestamp in ISO 8601 form; sorts lexicographically in time order."""
    return datetime.now(timezone.utc).isoformat()


def _validate_name(name: str, limit: int) -> None:
    if name == "":
        raise EmptyNameError()
    if len(name) > limit:
        raise NameTooLongError(limit)


def _validate_color(color: str) -> None:
    if not HEX_COLOR.fullmatch(color):
        raise InvalidColorError()


class TaskBoardDatabase:
    """
    SQLite database backing the task board.

    Features:
    - WAL mode for concurrent readers alongside a writer
    - Foreign keys enforced so project/column/task deletes cascade
    - UNIQUE(column_id, position) so two tasks never share a slot at rest
    - Explicit BEGIN/COMMIT/ROLLBACK transactions serialised by a re-entrant lock
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        """
        Open (and if needed create) the database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            busy_timeout_ms: How long SQLite waits on a locked database
        """
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        try:
            # Autocommit mode; transaction boundaries are issued explicitly
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.execute("PRAGMA foreign_keys=ON")

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}") from e

    def _create_schema(self) -> None:
        """Create tables, seed lookup data and add indexes."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS types (
                id INTEGER PRIMARY KEY,
                description TEXT NOT NULL UNIQUE
            )
        """)
        cursor.execute("""
            INSERT OR IGNORE INTO types (id, description) VALUES
                (1, 'task'), (2, 'feature'), (3, 'bug')
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS priorities (
                id INTEGER PRIMARY KEY,
                description TEXT NOT NULL UNIQUE,
                color TEXT NOT NULL
            )
        """)
        cursor.execute("""
            INSERT OR IGNORE INTO priorities (id, description, color) VALUES
                (1, 'trivial', '#3B82F6'),
                (2, 'low', '#22C55E'),
                (3, 'medium', '#EAB308'),
                (4, 'high', '#F97316'),
                (5, 'critical', '#EF4444')
        """)

        # p_to_c_label is shown on the parent side, c_to_p_label on the child side
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS relation_types (
                id INTEGER PRIMARY KEY,
                p_to_c_label TEXT NOT NULL,
                c_to_p_label TEXT NOT NULL,
                color TEXT NOT NULL,
                is_blocking INTEGER NOT NULL DEFAULT 0
            )
        """)
        cursor.execute("""
            INSERT OR IGNORE INTO relation_types (id, p_to_c_label, c_to_p_label, color, is_blocking) VALUES
                (1, 'Parent', 'Child', '#6B7280', 0),
                (2, 'Blocked By', 'Blocker', '#EF4444', 1),
                (3, 'Related To', 'Related To', '#3B82F6', 0)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS project_counters (
                project_id INTEGER PRIMARY KEY,
                next_ticket_number INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        # Columns are ordered by prev_id/next_id pointers, not by an index
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS columns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                prev_id INTEGER NULL,
                next_id INTEGER NULL,
                project_id INTEGER NOT NULL,
                holds_ready_tasks INTEGER NOT NULL DEFAULT 0,
                holds_in_progress_tasks INTEGER NOT NULL DEFAULT 0,
                holds_completed_tasks INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS labels (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                color TEXT NOT NULL DEFAULT '#7D56F4',
                project_id INTEGER NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
                UNIQUE (name, project_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                column_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                ticket_number INTEGER,
                type_id INTEGER NOT NULL DEFAULT 1,
                priority_id INTEGER NOT NULL DEFAULT 3,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (column_id) REFERENCES columns (id) ON DELETE CASCADE,
                FOREIGN KEY (type_id) REFERENCES types (id),
                FOREIGN KEY (priority_id) REFERENCES priorities (id),
                UNIQUE (column_id, position)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_labels (
                task_id INTEGER NOT NULL,
                label_id INTEGER NOT NULL,
                PRIMARY KEY (task_id, label_id),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (label_id) REFERENCES labels (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_subtasks (
                parent_id INTEGER NOT NULL,
                child_id INTEGER NOT NULL,
                relation_type_id INTEGER NOT NULL DEFAULT 1,
                PRIMARY KEY (parent_id, child_id),
                FOREIGN KEY (parent_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (child_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (relation_type_id) REFERENCES relation_types (id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_comments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                content TEXT NOT NULL CHECK (length(content) <= 1000),
                author TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_column ON tasks(column_id, position)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_type_id ON tasks(type_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_priority_id ON tasks(priority_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_columns_project ON columns(project_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_labels_project ON labels(project_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_task_labels_label ON task_labels(label_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_task_subtasks_parent ON task_subtasks(parent_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_task_subtasks_child ON task_subtasks(child_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_task_comments_task ON task_comments(task_id)")

        # At most one column per workflow role in each project
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_columns_ready_unique
            ON columns(project_id) WHERE holds_ready_tasks = 1
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_columns_in_progress_unique
            ON columns(project_id) WHERE holds_in_progress_tasks = 1
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_columns_completed_unique
            ON columns(project_id) WHERE holds_completed_tasks = 1
        """)

    def _drop_existing_tables(self) -> None:
        """Drop all tables in reverse dependency order."""
        cursor = self._connection.cursor()
        for table in (
            "task_comments", "task_subtasks", "task_labels", "tasks", "labels",
            "columns", "project_counters", "projects", "relation_types",
            "priorities", "types",
        ):
            cursor.execute(f"DROP TABLE IF EXISTS {table}")

    def _rollback(self, cursor: sqlite3.Cursor) -> None:
        try:
            cursor.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Failed to roll back transaction: {e}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run a block of statements atomically.

        Commits when the block exits normally. On any exception the
        transaction is rolled back and the exception propagates; a failing
        rollback is logged and never replaces the original error.
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except BaseException:
                self._rollback(cursor)
                raise

    @contextmanager
    def read(self) -> Iterator[sqlite3.Cursor]:
        """Cursor for single-statement reads in autocommit mode."""
        with self._connection_lock:
            yield self._connection.cursor()

    # Board setup and management

    def create_project(self, name: str, description: str = "") -> int:
        """
        Create a project together with its ticket counter.

        Args:
            name: Project name
            description: Optional project description

        Returns:
            Project ID
        """
        _validate_name(name, MAX_PROJECT_NAME_LENGTH)
        now = current_timestamp()
        with self.transaction() as cursor:
            queries = Queries(cursor)
            project_id = queries.create_project(name, description, now)
            queries.init_project_counter(project_id)
        logger.info(f"Created project {project_id} '{name}'")
        return project_id

    def get_project(self, project_id: int) -> Optional[Dict[str, Any]]:
        with self.read() as cursor:
            return Queries(cursor).get_project(project_id)

    def get_all_projects(self) -> List[Dict[str, Any]]:
        with self.read() as cursor:
            return Queries(cursor).get_all_projects()

    def update_project(self, project_id: int, name: Optional[str] = None,
                       description: Optional[str] = None) -> None:
        """Change a project's name and/or description; None leaves a field as it is."""
        if project_id <= 0:
            raise InvalidProjectIDError()
        if name is not None:
            _validate_name(name, MAX_PROJECT_NAME_LENGTH)

        with self.transaction() as cursor:
            queries = Queries(cursor)
            existing = queries.get_project(project_id)
            if existing is None:
                raise ProjectNotFoundError()
            queries.update_project(
                project_id,
                name if name is not None else existing["name"],
                description if description is not None else existing["description"],
                current_timestamp(),
            )

    def delete_project(self, project_id: int, force: bool = False) -> bool:
        """
        Delete a project; columns, tasks, labels and the ticket counter cascade.

        Args:
            project_id: Project to delete
            force: Delete even when the project still has tasks

        Returns:
            False if the project did not exist

        Raises:
            ProjectHasTasksError: If the project has tasks and force is not set
        """
        if project_id <= 0:
            raise InvalidProjectIDError()

        with self.transaction() as cursor:
            queries = Queries(cursor)
            if not force and queries.get_project_task_count(project_id) > 0:
                raise ProjectHasTasksError()
            deleted = queries.delete_project(project_id) > 0

        if deleted:
            logger.info(f"Deleted project {project_id}")
        return deleted

    def create_column(self, project_id: int, name: str, *, holds_ready_tasks: bool = False,
                      holds_in_progress_tasks: bool = False,
                      holds_completed_tasks: bool = False) -> int:
        """
        Append a column to the end of the project's column list.

        Args:
            project_id: Owning project
            name: Column name
            holds_ready_tasks: Mark as the project's ready column
            holds_in_progress_tasks: Mark as the project's in-progress column
            holds_completed_tasks: Mark as the project's completed column

        Returns:
            Column ID

        Raises:
            ProjectNotFoundError: If the project does not exist
            sqlite3.IntegrityError: If another column already carries a requested role
        """
        _validate_name(name, MAX_COLUMN_NAME_LENGTH)
        with self.transaction() as cursor:
            queries = Queries(cursor)
            if queries.get_project(project_id) is None:
                raise ProjectNotFoundError()
            tail_id = queries.get_tail_column_id(project_id)
            column_id = queries.create_column(
                project_id, name, tail_id,
                holds_ready_tasks, holds_in_progress_tasks, holds_completed_tasks,
            )
            if tail_id is not None:
                queries.set_column_next(tail_id, column_id)
        return column_id

    def rename_column(self, column_id: int, name: str) -> None:
        if column_id <= 0:
            raise InvalidColumnIDError()
        _validate_name(name, MAX_COLUMN_NAME_LENGTH)

        with self.transaction() as cursor:
            queries = Queries(cursor)
            if queries.get_column(column_id) is None:
                raise ColumnNotFoundError()
            queries.update_column_name(column_id, name)

    def delete_column(self, column_id: int) -> None:
        """
        Remove an empty column and link its neighbours to each other.

        Raises:
            ColumnNotFoundError: If the column does not exist
            ColumnHasTasksError: If tasks still live in the column
        """
        if column_id <= 0:
            raise InvalidColumnIDError()

        with self.transaction() as cursor:
            queries = Queries(cursor)
            column = queries.get_column(column_id)
            if column is None:
                raise ColumnNotFoundError()
            task_count, _ = queries.get_column_occupancy(column_id)
            if task_count > 0:
                raise ColumnHasTasksError()

            prev_id, next_id = column["prev_id"], column["next_id"]
            if prev_id is not None:
                queries.set_column_next(prev_id, next_id)
            if next_id is not None:
                queries.set_column_prev(next_id, prev_id)
            queries.delete_column(column_id)

        logger.info(f"Deleted column {column_id} from project {column['project_id']}")

    def get_columns(self, project_id: int) -> List[Dict[str, Any]]:
        """Columns of a project in linked-list order (head first)."""
        with self.read() as cursor:
            rows = Queries(cursor).get_columns_by_project(project_id)

        by_id = {row["id"]: row for row in rows}
        ordered: List[Dict[str, Any]] = []
        current = next((row for row in rows if row["prev_id"] is None), None)
        while current is not None and len(ordered) < len(rows):
            ordered.append(current)
            current = by_id.get(current["next_id"])

        # Columns unreachable from the head (broken links) keep id order at the end
        seen = {row["id"] for row in ordered}
        ordered.extend(row for row in rows if row["id"] not in seen)
        return ordered

    def create_label(self, project_id: int, name: str, color: str = "#7D56F4") -> int:
        """Create a label scoped to a project; names are unique per project."""
        _validate_name(name, MAX_LABEL_NAME_LENGTH)
        _validate_color(color)
        with self.transaction() as cursor:
            queries = Queries(cursor)
            if queries.get_project(project_id) is None:
                raise ProjectNotFoundError()
            try:
                return queries.create_label(project_id, name, color)
            except sqlite3.IntegrityError:
                raise DuplicateLabelNameError() from None

    def update_label(self, label_id: int, name: Optional[str] = None, color: Optional[str] = None) -> None:
        """Change a label's name and/or color; None leaves a field as it is."""
        if label_id <= 0:
            raise InvalidLabelIDError()
        if name is not None:
            _validate_name(name, MAX_LABEL_NAME_LENGTH)
        if color is not None:
            _validate_color(color)

        with self.transaction() as cursor:
            queries = Queries(cursor)
            existing = queries.get_label(label_id)
            if existing is None:
                raise LabelNotFoundError()
            try:
                queries.update_label(
                    label_id,
                    name if name is not None else existing["name"],
                    color if color is not None else existing["color"],
                )
            except sqlite3.IntegrityError:
                raise DuplicateLabelNameError() from None

    def delete_label(self, label_id: int) -> bool:
        """Delete a label and detach it from every task. A missing label is not an error."""
        if label_id <= 0:
            raise InvalidLabelIDError()
        with self.transaction() as cursor:
            return Queries(cursor).delete_label(label_id) > 0

    def get_labels(self, project_id: int) -> List[Dict[str, Any]]:
        with self.read() as cursor:
            return Queries(cursor).get_labels_by_project(project_id)

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """Drop all tables and recreate an empty schema."""
        with self._connection_lock:
            self._drop_existing_tables()
            self._create_schema()
