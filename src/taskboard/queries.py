"""
Typed statement accessors over a SQLite cursor.

One method per SQL statement and no business rules. The service creates a
Queries instance for the cursor of the transaction (or read) it is running
in, so every statement issued through it shares that transaction.
"""

import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .models import ColumnRole

# Unit separator used to pack label fields into one GROUP_CONCAT column
LABEL_SEPARATOR = chr(31)

_SUMMARY_SELECT = """
    SELECT
        t.id,
        t.title,
        t.column_id,
        t.position,
        t.ticket_number,
        ty.description AS type_description,
        p.description AS priority_description,
        p.color AS priority_color,
        CAST(COALESCE(GROUP_CONCAT(l.id, char(31)), '') AS TEXT) AS label_ids,
        CAST(COALESCE(GROUP_CONCAT(l.name, char(31)), '') AS TEXT) AS label_names,
        CAST(COALESCE(GROUP_CONCAT(l.color, char(31)), '') AS TEXT) AS label_colors,
        EXISTS (
            SELECT 1
            FROM task_subtasks ts
            INNER JOIN relation_types rt ON ts.relation_type_id = rt.id
            WHERE ts.parent_id = t.id AND rt.is_blocking = 1
        ) AS is_blocked
    FROM tasks t
    INNER JOIN columns c ON t.column_id = c.id
    LEFT JOIN types ty ON t.type_id = ty.id
    LEFT JOIN priorities p ON t.priority_id = p.id
    LEFT JOIN task_labels tl ON t.id = tl.task_id
    LEFT JOIN labels l ON tl.label_id = l.id
"""

_SUMMARY_GROUP = """
    GROUP BY t.id, t.title, t.column_id, t.position, t.ticket_number,
             ty.description, p.description, p.color
    ORDER BY t.column_id, t.position
"""

def _one(cursor: sqlite3.Cursor) -> Optional[Dict[str, Any]]:
    row = cursor.fetchone()
    return dict(row) if row is not None else None


def _all(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    return [dict(row) for row in cursor.fetchall()]


def _role_flag(role: str) -> str:
    try:
        return ColumnRole(role).flag_column
    except ValueError:
        raise ValueError(f"Unknown column role: {role}") from None


class Queries:
    """Statement accessors bound to one cursor."""

    def __init__(self, cursor: sqlite3.Cursor):
        self.cursor = cursor

    # Projects, counters, columns, labels

    def create_project(self, name: str, description: str, now: str) -> int:
        self.cursor.execute(
            "INSERT INTO projects (name, description, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (name, description, now, now),
        )
        return self.cursor.lastrowid

    def get_project(self, project_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute("SELECT id, name, description FROM projects WHERE id = ?", (project_id,))
        return _one(self.cursor)

    def get_all_projects(self) -> List[Dict[str, Any]]:
        self.cursor.execute("SELECT id, name, description FROM projects ORDER BY id")
        return _all(self.cursor)

    def update_project(self, project_id: int, name: str, description: str, now: str) -> None:
        self.cursor.execute(
            "UPDATE projects SET name = ?, description = ?, updated_at = ? WHERE id = ?",
            (name, description, now, project_id),
        )

    def get_project_task_count(self, project_id: int) -> int:
        self.cursor.execute(
            "SELECT COUNT(*) FROM tasks t JOIN columns c ON t.column_id = c.id WHERE c.project_id = ?",
            (project_id,),
        )
        return self.cursor.fetchone()[0]

    def delete_project(self, project_id: int) -> int:
        self.cursor.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return self.cursor.rowcount

    def init_project_counter(self, project_id: int) -> None:
        self.cursor.execute(
            "INSERT INTO project_counters (project_id, next_ticket_number) VALUES (?, 1)",
            (project_id,),
        )

    def get_next_ticket_number(self, project_id: int) -> Optional[int]:
        self.cursor.execute(
            "SELECT next_ticket_number FROM project_counters WHERE project_id = ?",
            (project_id,),
        )
        row = self.cursor.fetchone()
        return row[0] if row is not None else None

    def increment_ticket_number(self, project_id: int) -> None:
        self.cursor.execute(
            "UPDATE project_counters SET next_ticket_number = next_ticket_number + 1 WHERE project_id = ?",
            (project_id,),
        )

    def get_tail_column_id(self, project_id: int) -> Optional[int]:
        self.cursor.execute(
            "SELECT id FROM columns WHERE project_id = ? AND next_id IS NULL ORDER BY id DESC LIMIT 1",
            (project_id,),
        )
        row = self.cursor.fetchone()
        return row[0] if row is not None else None

    def create_column(self, project_id: int, name: str, prev_id: Optional[int],
                      holds_ready: bool, holds_in_progress: bool, holds_completed: bool) -> int:
        self.cursor.execute(
            """
            INSERT INTO columns (name, prev_id, next_id, project_id,
                                 holds_ready_tasks, holds_in_progress_tasks, holds_completed_tasks)
            VALUES (?, ?, NULL, ?, ?, ?, ?)
            """,
            (name, prev_id, project_id, int(holds_ready), int(holds_in_progress), int(holds_completed)),
        )
        return self.cursor.lastrowid

    def set_column_next(self, column_id: int, next_id: Optional[int]) -> None:
        self.cursor.execute("UPDATE columns SET next_id = ? WHERE id = ?", (next_id, column_id))

    def set_column_prev(self, column_id: int, prev_id: Optional[int]) -> None:
        self.cursor.execute("UPDATE columns SET prev_id = ? WHERE id = ?", (prev_id, column_id))

    def update_column_name(self, column_id: int, name: str) -> None:
        self.cursor.execute("UPDATE columns SET name = ? WHERE id = ?", (name, column_id))

    def delete_column(self, column_id: int) -> int:
        self.cursor.execute("DELETE FROM columns WHERE id = ?", (column_id,))
        return self.cursor.rowcount

    def get_column(self, column_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT id, name, prev_id, next_id, project_id,
                   holds_ready_tasks, holds_in_progress_tasks, holds_completed_tasks
            FROM columns WHERE id = ?
            """,
            (column_id,),
        )
        return _one(self.cursor)

    def get_columns_by_project(self, project_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT id, name, prev_id, next_id, project_id,
                   holds_ready_tasks, holds_in_progress_tasks, holds_completed_tasks
            FROM columns WHERE project_id = ? ORDER BY id
            """,
            (project_id,),
        )
        return _all(self.cursor)

    def get_column_by_role(self, project_id: int, role: str) -> Optional[Dict[str, Any]]:
        flag = _role_flag(role)
        self.cursor.execute(
            f"SELECT id, name, project_id FROM columns WHERE project_id = ? AND {flag} = 1 LIMIT 1",
            (project_id,),
        )
        return _one(self.cursor)

    def get_project_id_from_column(self, column_id: int) -> Optional[int]:
        self.cursor.execute("SELECT project_id FROM columns WHERE id = ?", (column_id,))
        row = self.cursor.fetchone()
        return row[0] if row is not None else None

    def create_label(self, project_id: int, name: str, color: str) -> int:
        self.cursor.execute(
            "INSERT INTO labels (name, color, project_id) VALUES (?, ?, ?)",
            (name, color, project_id),
        )
        return self.cursor.lastrowid

    def get_label(self, label_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute("SELECT id, name, color, project_id FROM labels WHERE id = ?", (label_id,))
        return _one(self.cursor)

    def get_labels_by_project(self, project_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            "SELECT id, name, color, project_id FROM labels WHERE project_id = ? ORDER BY name",
            (project_id,),
        )
        return _all(self.cursor)

    def update_label(self, label_id: int, name: str, color: str) -> None:
        self.cursor.execute("UPDATE labels SET name = ?, color = ? WHERE id = ?", (name, color, label_id))

    def delete_label(self, label_id: int) -> int:
        self.cursor.execute("DELETE FROM labels WHERE id = ?", (label_id,))
        return self.cursor.rowcount

    # Tasks

    def create_task(self, title: str, description: Optional[str], column_id: int,
                    position: int, ticket_number: int, now: str) -> int:
        self.cursor.execute(
            """
            INSERT INTO tasks (title, description, column_id, position, ticket_number,
                               created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (title, description, column_id, position, ticket_number, now, now),
        )
        return self.cursor.lastrowid

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT id, title, description, column_id, position, ticket_number,
                   type_id, priority_id, created_at, updated_at
            FROM tasks WHERE id = ?
            """,
            (task_id,),
        )
        return _one(self.cursor)

    def get_task_detail(self, task_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT
                t.id, t.title, t.description, t.column_id, t.position, t.ticket_number,
                t.created_at, t.updated_at,
                ty.description AS type_description,
                p.description AS priority_description,
                p.color AS priority_color,
                c.name AS column_name,
                proj.id AS project_id,
                proj.name AS project_name,
                EXISTS (
                    SELECT 1 FROM task_subtasks ts
                    INNER JOIN relation_types rt ON ts.relation_type_id = rt.id
                    WHERE ts.parent_id = t.id AND rt.is_blocking = 1
                ) AS is_blocked
            FROM tasks t
            INNER JOIN columns c ON t.column_id = c.id
            INNER JOIN projects proj ON c.project_id = proj.id
            LEFT JOIN types ty ON t.type_id = ty.id
            LEFT JOIN priorities p ON t.priority_id = p.id
            WHERE t.id = ?
            """,
            (task_id,),
        )
        return _one(self.cursor)

    def update_task(self, task_id: int, title: str, description: Optional[str], now: str) -> None:
        self.cursor.execute(
            "UPDATE tasks SET title = ?, description = ?, updated_at = ? WHERE id = ?",
            (title, description, now, task_id),
        )

    def update_task_priority(self, task_id: int, priority_id: int, now: str) -> None:
        self.cursor.execute(
            "UPDATE tasks SET priority_id = ?, updated_at = ? WHERE id = ?",
            (priority_id, now, task_id),
        )

    def update_task_type(self, task_id: int, type_id: int, now: str) -> None:
        self.cursor.execute(
            "UPDATE tasks SET type_id = ?, updated_at = ? WHERE id = ?",
            (type_id, now, task_id),
        )

    def delete_task(self, task_id: int) -> int:
        self.cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return self.cursor.rowcount

    def get_project_id_from_task(self, task_id: int) -> Optional[int]:
        self.cursor.execute(
            """
            SELECT c.project_id FROM tasks t
            INNER JOIN columns c ON t.column_id = c.id
            WHERE t.id = ?
            """,
            (task_id,),
        )
        row = self.cursor.fetchone()
        return row[0] if row is not None else None

    def get_task_position(self, task_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT t.column_id, t.position, c.project_id, c.prev_id, c.next_id
            FROM tasks t
            INNER JOIN columns c ON t.column_id = c.id
            WHERE t.id = ?
            """,
            (task_id,),
        )
        return _one(self.cursor)

    def get_column_occupancy(self, column_id: int) -> Tuple[int, int]:
        """(task count, highest position) for a column; (0, 0) when empty."""
        self.cursor.execute(
            "SELECT COUNT(*), COALESCE(MAX(position), 0) FROM tasks WHERE column_id = ?",
            (column_id,),
        )
        count, max_position = self.cursor.fetchone()
        return count, max_position

    def move_task_to_column(self, task_id: int, column_id: int, position: int, now: str) -> None:
        self.cursor.execute(
            "UPDATE tasks SET column_id = ?, position = ?, updated_at = ? WHERE id = ?",
            (column_id, position, now, task_id),
        )

    def set_task_position(self, task_id: int, position: int, now: str) -> None:
        self.cursor.execute(
            "UPDATE tasks SET position = ?, updated_at = ? WHERE id = ?",
            (position, now, task_id),
        )

    def get_task_above(self, column_id: int, position: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT id, position FROM tasks
            WHERE column_id = ? AND position < ? AND position >= 0
            ORDER BY position DESC LIMIT 1
            """,
            (column_id, position),
        )
        return _one(self.cursor)

    def get_task_below(self, column_id: int, position: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT id, position FROM tasks
            WHERE column_id = ? AND position > ?
            ORDER BY position ASC LIMIT 1
            """,
            (column_id, position),
        )
        return _one(self.cursor)

    # Summaries

    def get_task_summaries_by_project(self, project_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            _SUMMARY_SELECT + " WHERE c.project_id = ? " + _SUMMARY_GROUP,
            (project_id,),
        )
        return _all(self.cursor)

    def get_task_summaries_by_project_filtered(self, project_id: int, pattern: str) -> List[Dict[str, Any]]:
        self.cursor.execute(
            _SUMMARY_SELECT + " WHERE c.project_id = ? AND t.title LIKE ? " + _SUMMARY_GROUP,
            (project_id, pattern),
        )
        return _all(self.cursor)

    def get_task_summaries_by_role(self, project_id: int, role: str) -> List[Dict[str, Any]]:
        flag = _role_flag(role)
        self.cursor.execute(
            _SUMMARY_SELECT + f" WHERE c.project_id = ? AND c.{flag} = 1 " + _SUMMARY_GROUP,
            (project_id,),
        )
        return _all(self.cursor)

    def get_task_references_for_project(self, project_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT t.id, t.ticket_number, t.title, p.name AS project_name
            FROM tasks t
            INNER JOIN columns c ON t.column_id = c.id
            INNER JOIN projects p ON c.project_id = p.id
            WHERE p.id = ?
            ORDER BY t.ticket_number
            """,
            (project_id,),
        )
        return _all(self.cursor)

    # Labels on tasks

    def get_task_labels(self, task_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT l.id, l.name, l.color, l.project_id
            FROM labels l
            INNER JOIN task_labels tl ON l.id = tl.label_id
            WHERE tl.task_id = ?
            ORDER BY l.name
            """,
            (task_id,),
        )
        return _all(self.cursor)

    def is_label_attached(self, task_id: int, label_id: int) -> bool:
        self.cursor.execute(
            "SELECT 1 FROM task_labels WHERE task_id = ? AND label_id = ?",
            (task_id, label_id),
        )
        return self.cursor.fetchone() is not None

    def add_label_to_task(self, task_id: int, label_id: int) -> None:
        self.cursor.execute(
            "INSERT INTO task_labels (task_id, label_id) VALUES (?, ?)",
            (task_id, label_id),
        )

    def remove_label_from_task(self, task_id: int, label_id: int) -> int:
        self.cursor.execute(
            "DELETE FROM task_labels WHERE task_id = ? AND label_id = ?",
            (task_id, label_id),
        )
        return self.cursor.rowcount

    # Relations

    def get_all_relation_types(self) -> List[Dict[str, Any]]:
        self.cursor.execute(
            "SELECT id, p_to_c_label, c_to_p_label, color, is_blocking FROM relation_types ORDER BY id"
        )
        return _all(self.cursor)

    def get_relation(self, parent_id: int, child_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            "SELECT parent_id, child_id, relation_type_id FROM task_subtasks WHERE parent_id = ? AND child_id = ?",
            (parent_id, child_id),
        )
        return _one(self.cursor)

    def add_relation(self, parent_id: int, child_id: int, relation_type_id: int) -> None:
        self.cursor.execute(
            "INSERT INTO task_subtasks (parent_id, child_id, relation_type_id) VALUES (?, ?, ?)",
            (parent_id, child_id, relation_type_id),
        )

    def remove_relation(self, parent_id: int, child_id: int) -> int:
        self.cursor.execute(
            "DELETE FROM task_subtasks WHERE parent_id = ? AND child_id = ?",
            (parent_id, child_id),
        )
        return self.cursor.rowcount

    def get_parent_tasks(self, task_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT t.id, t.ticket_number, t.title, p.name AS project_name,
                   rt.id AS relation_type_id, rt.p_to_c_label AS relation_label,
                   rt.color AS relation_color, rt.is_blocking
            FROM tasks t
            INNER JOIN task_subtasks ts ON t.id = ts.parent_id
            INNER JOIN relation_types rt ON ts.relation_type_id = rt.id
            INNER JOIN columns c ON t.column_id = c.id
            INNER JOIN projects p ON c.project_id = p.id
            WHERE ts.child_id = ?
            ORDER BY p.name, t.ticket_number
            """,
            (task_id,),
        )
        return _all(self.cursor)

    def get_child_tasks(self, task_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT t.id, t.ticket_number, t.title, p.name AS project_name,
                   rt.id AS relation_type_id, rt.c_to_p_label AS relation_label,
                   rt.color AS relation_color, rt.is_blocking
            FROM tasks t
            INNER JOIN task_subtasks ts ON t.id = ts.child_id
            INNER JOIN relation_types rt ON ts.relation_type_id = rt.id
            INNER JOIN columns c ON t.column_id = c.id
            INNER JOIN projects p ON c.project_id = p.id
            WHERE ts.parent_id = ?
            ORDER BY p.name, t.ticket_number
            """,
            (task_id,),
        )
        return _all(self.cursor)

    def get_tasks_for_tree(self, project_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT t.id, t.ticket_number, t.title,
                   c.name AS column_name, proj.name AS project_name
            FROM tasks t
            INNER JOIN columns c ON t.column_id = c.id
            INNER JOIN projects proj ON c.project_id = proj.id
            WHERE proj.id = ?
            ORDER BY t.ticket_number
            """,
            (project_id,),
        )
        return _all(self.cursor)

    def get_task_relations_for_project(self, project_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT ts.parent_id, ts.child_id,
                   rt.c_to_p_label AS relation_label,
                   rt.color AS relation_color,
                   rt.is_blocking
            FROM task_subtasks ts
            INNER JOIN relation_types rt ON ts.relation_type_id = rt.id
            INNER JOIN tasks t_parent ON ts.parent_id = t_parent.id
            INNER JOIN columns c ON t_parent.column_id = c.id
            WHERE c.project_id = ?
            ORDER BY ts.parent_id, ts.child_id
            """,
            (project_id,),
        )
        return _all(self.cursor)

    # Comments

    def create_comment(self, task_id: int, content: str, author: str, now: str) -> int:
        self.cursor.execute(
            """
            INSERT INTO task_comments (task_id, content, author, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (task_id, content, author, now, now),
        )
        return self.cursor.lastrowid

    def get_comment(self, comment_id: int) -> Optional[Dict[str, Any]]:
        self.cursor.execute(
            "SELECT id, task_id, content, author, created_at, updated_at FROM task_comments WHERE id = ?",
            (comment_id,),
        )
        return _one(self.cursor)

    def get_comments_by_task(self, task_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute(
            """
            SELECT id, task_id, content, author, created_at, updated_at
            FROM task_comments
            WHERE task_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (task_id,),
        )
        return _all(self.cursor)

    def update_comment(self, comment_id: int, content: str, now: str) -> None:
        self.cursor.execute(
            "UPDATE task_comments SET content = ?, updated_at = ? WHERE id = ?",
            (content, now, comment_id),
        )

    def delete_comment(self, comment_id: int) -> int:
        self.cursor.execute("DELETE FROM task_comments WHERE id = ?", (comment_id,))
        return self.cursor.rowcount

    def get_comment_count_by_task(self, task_id: int) -> int:
        self.cursor.execute("SELECT COUNT(*) FROM task_comments WHERE task_id = ?", (task_id,))
        return self.cursor.fetchone()[0]
