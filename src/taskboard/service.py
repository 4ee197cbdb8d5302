"""
Task Service

Business operations on tasks: creation, sparse updates, deletion, movement
between and within columns, relationships, labels and comments. Each write
validates its input before touching the store, runs its statements inside a
single transaction, and publishes a change event for the affected project
only after the transaction has committed.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .database import TaskBoardDatabase, current_timestamp
from .errors import (
    AlreadyFirstColumnError,
    AlreadyFirstTaskError,
    AlreadyLastColumnError,
    AlreadyLastTaskError,
    ColumnNotFoundError,
    ColumnRoleNotFoundError,
    CommentMessageTooLongError,
    CommentNotFoundError,
    DuplicateLabelError,
    DuplicateRelationError,
    EmptyCommentMessageError,
    EmptyTitleError,
    InvalidColumnIDError,
    InvalidCommentIDError,
    InvalidLabelIDError,
    InvalidPositionError,
    InvalidPriorityError,
    InvalidRelationTypeError,
    InvalidTaskIDError,
    InvalidTypeError,
    LabelNotFoundError,
    SelfRelationError,
    TaskAlreadyInTargetColumnError,
    TaskBoardError,
    TaskNotFoundError,
    TitleTooLongError,
    TransactionError,
)
from .events import DEFAULT_BASE_DELAY, DEFAULT_MAX_RETRIES, Event, EventPublisher, publish_with_retry
from .models import (
    MAX_COMMENT_LENGTH,
    MAX_TITLE_LENGTH,
    RELATION_TYPE_BLOCKING,
    RELATION_TYPE_PARENT_CHILD,
    RELATION_TYPE_RELATED,
    SENTINEL_POSITION,
    ColumnRole,
    Comment,
    CreateCommentRequest,
    CreateTaskRequest,
    Label,
    RelationType,
    Task,
    TaskBoard,
    TaskDetail,
    TaskReference,
    TaskSummary,
    TaskTreeNode,
    UpdateCommentRequest,
    UpdateTaskRequest,
)
from .queries import LABEL_SEPARATOR, Queries
from .tree import build_task_tree, count_nodes

logger = logging.getLogger(__name__)

RELATION_TYPE_IDS = (RELATION_TYPE_PARENT_CHILD, RELATION_TYPE_BLOCKING, RELATION_TYPE_RELATED)


# Validation helpers: pure, no I/O

def _require_task_id(*task_ids: int) -> None:
    for task_id in task_ids:
        if task_id <= 0:
            raise InvalidTaskIDError()


def _validate_title(title: str) -> None:
    if title == "":
        raise EmptyTitleError()
    if len(title) > MAX_TITLE_LENGTH:
        raise TitleTooLongError()


def _validate_comment_message(message: str) -> None:
    if message == "":
        raise EmptyCommentMessageError()
    if len(message) > MAX_COMMENT_LENGTH:
        raise CommentMessageTooLongError()


def _validate_relation(task_id: int, other_id: int) -> None:
    _require_task_id(task_id, other_id)
    if task_id == other_id:
        raise SelfRelationError()


# Row conversion

def _parse_labels(ids: str, names: str, colors: str) -> List[Label]:
    """Unpack the GROUP_CONCAT label columns of a summary row."""
    if not ids or not names or not colors:
        return []

    id_parts = ids.split(LABEL_SEPARATOR)
    name_parts = names.split(LABEL_SEPARATOR)
    color_parts = colors.split(LABEL_SEPARATOR)
    if not len(id_parts) == len(name_parts) == len(color_parts):
        return []

    return [
        Label(id=int(label_id), name=name, color=color)
        for label_id, name, color in zip(id_parts, name_parts, color_parts)
    ]


def _to_task(row: Dict[str, Any]) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        column_id=row["column_id"],
        position=row["position"],
        ticket_number=row["ticket_number"],
        type_id=row["type_id"],
        priority_id=row["priority_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _to_summary(row: Dict[str, Any]) -> TaskSummary:
    return TaskSummary(
        id=row["id"],
        title=row["title"],
        column_id=row["column_id"],
        position=row["position"],
        ticket_number=row["ticket_number"],
        type_description=row["type_description"],
        priority_description=row["priority_description"],
        priority_color=row["priority_color"],
        labels=_parse_labels(row["label_ids"], row["label_names"], row["label_colors"]),
        is_blocked=bool(row["is_blocked"]),
    )


def _to_reference(row: Dict[str, Any]) -> TaskReference:
    return TaskReference(
        id=row["id"],
        ticket_number=row["ticket_number"],
        title=row["title"],
        project_name=row["project_name"],
        relation_type_id=row.get("relation_type_id"),
        relation_label=row.get("relation_label"),
        relation_color=row.get("relation_color"),
        is_blocking=bool(row.get("is_blocking", False)),
    )


def _to_comment(row: Dict[str, Any]) -> Comment:
    return Comment(
        id=row["id"],
        task_id=row["task_id"],
        message=row["content"],
        author=row["author"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _group_by_column(rows: List[Dict[str, Any]]) -> TaskBoard:
    board: TaskBoard = {}
    for row in rows:
        board.setdefault(row["column_id"], []).append(_to_summary(row))
    return board


class TaskService:
    """
    Task operations over a TaskBoardDatabase.

    The service keeps no state between calls; everything lives in the store.
    An optional EventPublisher is informed after each successful write.
    """

    def __init__(self, database: TaskBoardDatabase, publisher: Optional[EventPublisher] = None,
                 *, notify_retries: int = DEFAULT_MAX_RETRIES,
                 notify_base_delay: float = DEFAULT_BASE_DELAY):
        """
        Args:
            database: Store holding all board data
            publisher: Receives a db_changed event after each committed write
            notify_retries: Attempts per event before it is dropped
            notify_base_delay: First retry delay in seconds, doubled per retry
        """
        self.db = database
        self.publisher = publisher
        self.notify_retries = notify_retries
        self.notify_base_delay = notify_base_delay

    # Plumbing

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Queries]:
        """Queries bound to one transaction; store errors become TransactionError."""
        try:
            with self.db.transaction() as cursor:
                yield Queries(cursor)
        except sqlite3.Error as e:
            logger.error(f"Transaction failed while trying to {operation}: {e}")
            raise TransactionError(operation, e) from e

    @contextmanager
    def _reader(self, operation: str) -> Iterator[Queries]:
        try:
            with self.db.read() as cursor:
                yield Queries(cursor)
        except sqlite3.Error as e:
            raise TransactionError(operation, e) from e

    def _publish(self, project_id: Optional[int]) -> None:
        """Best-effort change notification; never raises."""
        if project_id is None or self.publisher is None:
            return
        publish_with_retry(
            self.publisher,
            Event(project_id=project_id),
            max_retries=self.notify_retries,
            base_delay=self.notify_base_delay,
        )

    @staticmethod
    def _require_task(queries: Queries, task_id: int) -> Dict[str, Any]:
        position = queries.get_task_position(task_id)
        if position is None:
            raise TaskNotFoundError()
        return position

    # Create / update / delete

    def create_task(self, request: CreateTaskRequest) -> Task:
        """
        Create a task with its labels and relations in one transaction.

        The ticket number is reserved from the project's counter inside the
        same transaction, so a failed creation never consumes a number.

        Raises:
            ValidationError: On invalid input, before any I/O
            ColumnNotFoundError: If the column does not exist
            TaskNotFoundError: If a related task does not exist
            LabelNotFoundError: If a label is not in the task's project
            DuplicateRelationError / DuplicateLabelError: On repeated ids
            TransactionError: On store failure; nothing is persisted
        """
        self._validate_create_task(request)

        with self._transaction("create task") as q:
            project_id = q.get_project_id_from_column(request.column_id)
            if project_id is None:
                raise ColumnNotFoundError()

            ticket_number = q.get_next_ticket_number(project_id)
            if ticket_number is None:
                q.init_project_counter(project_id)
                ticket_number = 1

            now = current_timestamp()
            task_id = q.create_task(
                request.title,
                request.description or None,
                request.column_id,
                request.position,
                ticket_number,
                now,
            )
            q.increment_ticket_number(project_id)

            if request.priority_id > 0:
                q.update_task_priority(task_id, request.priority_id, now)
            if request.type_id > 0:
                q.update_task_type(task_id, request.type_id, now)

            for label_id in request.label_ids:
                self._attach_label(q, task_id, project_id, label_id)

            for parent_id in request.parent_ids:
                self._add_relation(q, parent_id, task_id, RELATION_TYPE_PARENT_CHILD)
            for child_id in request.child_ids:
                self._add_relation(q, task_id, child_id, RELATION_TYPE_PARENT_CHILD)
            # Blocking edges point from the blocked task (parent) to its blocker (child)
            for blocker_id in request.blocked_by_ids:
                self._add_relation(q, task_id, blocker_id, RELATION_TYPE_BLOCKING)
            for blocked_id in request.blocks_ids:
                self._add_relation(q, blocked_id, task_id, RELATION_TYPE_BLOCKING)

            row = q.get_task(task_id)

        logger.info(f"Created task {task_id} (#{ticket_number}) in column {request.column_id}")
        self._publish(project_id)
        return _to_task(row)

    def _validate_create_task(self, request: CreateTaskRequest) -> None:
        _validate_title(request.title)
        if request.column_id <= 0:
            raise InvalidColumnIDError()
        if request.position < 0:
            raise InvalidPositionError()
        if request.priority_id < 0:
            raise InvalidPriorityError()
        if request.type_id < 0:
            raise InvalidTypeError()
        if any(label_id <= 0 for label_id in request.label_ids):
            raise InvalidLabelIDError()
        _require_task_id(*request.parent_ids, *request.child_ids,
                         *request.blocked_by_ids, *request.blocks_ids)

    def update_task(self, request: UpdateTaskRequest) -> None:
        """
        Apply a sparse update; fields left as None keep their current value.

        Title and description are always written together, so an unset one
        is re-read from the current row first.
        """
        _require_task_id(request.task_id)
        if request.title is not None:
            _validate_title(request.title)
        if request.priority_id is not None and request.priority_id <= 0:
            raise InvalidPriorityError()
        if request.type_id is not None and request.type_id <= 0:
            raise InvalidTypeError()

        with self._transaction("update task") as q:
            current = q.get_task(request.task_id)
            if current is None:
                raise TaskNotFoundError()

            now = current_timestamp()
            if request.title is not None or request.description is not None:
                title = request.title if request.title is not None else current["title"]
                description = (request.description if request.description is not None
                               else current["description"])
                q.update_task(request.task_id, title, description, now)

            if request.priority_id is not None:
                q.update_task_priority(request.task_id, request.priority_id, now)
            if request.type_id is not None:
                q.update_task_type(request.task_id, request.type_id, now)

            project_id = q.get_project_id_from_task(request.task_id)

        self._publish(project_id)

    def delete_task(self, task_id: int) -> None:
        """Delete a task. Deleting an id that does not exist is not an error."""
        _require_task_id(task_id)

        with self._transaction("delete task") as q:
            project_id = q.get_project_id_from_task(task_id)
            deleted = q.delete_task(task_id)

        if deleted:
            logger.info(f"Deleted task {task_id}")
        self._publish(project_id)

    # Reads

    def get_task(self, task_id: int) -> Task:
        _require_task_id(task_id)
        with self._reader("get task") as q:
            row = q.get_task(task_id)
        if row is None:
            raise TaskNotFoundError()
        return _to_task(row)

    def get_task_detail(self, task_id: int) -> TaskDetail:
        """Full task view: labels, related tasks with relation metadata, comments, blocked flag."""
        _require_task_id(task_id)

        with self._reader("get task detail") as q:
            row = q.get_task_detail(task_id)
            if row is None:
                raise TaskNotFoundError()
            labels = q.get_task_labels(task_id)
            parents = q.get_parent_tasks(task_id)
            children = q.get_child_tasks(task_id)
            comments = q.get_comments_by_task(task_id)

        return TaskDetail(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            column_id=row["column_id"],
            column_name=row["column_name"],
            project_id=row["project_id"],
            project_name=row["project_name"],
            position=row["position"],
            ticket_number=row["ticket_number"],
            type_description=row["type_description"],
            priority_description=row["priority_description"],
            priority_color=row["priority_color"],
            labels=[Label(**label) for label in labels],
            parent_tasks=[_to_reference(parent) for parent in parents],
            child_tasks=[_to_reference(child) for child in children],
            comments=[_to_comment(comment) for comment in comments],
            is_blocked=bool(row["is_blocked"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_task_summaries_by_project(self, project_id: int) -> TaskBoard:
        """Task summaries grouped by column id, each list ordered by position."""
        with self._reader("get task summaries") as q:
            rows = q.get_task_summaries_by_project(project_id)
        return _group_by_column(rows)

    def get_task_summaries_by_project_filtered(self, project_id: int, search_query: str) -> TaskBoard:
        with self._reader("get filtered task summaries") as q:
            rows = q.get_task_summaries_by_project_filtered(project_id, f"%{search_query}%")
        return _group_by_column(rows)

    def get_ready_task_summaries_by_project(self, project_id: int) -> List[TaskSummary]:
        """Tasks in the project's ready column that nothing blocks."""
        with self._reader("get ready task summaries") as q:
            rows = q.get_task_summaries_by_role(project_id, ColumnRole.READY.value)
        return [_to_summary(row) for row in rows if not row["is_blocked"]]

    def get_in_progress_task_summaries_by_project(self, project_id: int) -> List[TaskSummary]:
        with self._reader("get in-progress task summaries") as q:
            rows = q.get_task_summaries_by_role(project_id, ColumnRole.IN_PROGRESS.value)
        return [_to_summary(row) for row in rows]

    def get_blocked_task_summaries_by_project(self, project_id: int) -> List[TaskSummary]:
        """Tasks in any column of the project that are the blocked side of a blocking edge."""
        with self._reader("get blocked task summaries") as q:
            rows = q.get_task_summaries_by_project(project_id)
        return [_to_summary(row) for row in rows if row["is_blocked"]]

    def get_task_references_for_project(self, project_id: int) -> List[TaskReference]:
        with self._reader("get task references") as q:
            rows = q.get_task_references_for_project(project_id)
        return [_to_reference(row) for row in rows]

    def get_task_tree_by_project(self, project_id: int) -> List[TaskTreeNode]:
        with self._reader("get task tree") as q:
            tasks = q.get_tasks_for_tree(project_id)
            if not tasks:
                return []
            relations = q.get_task_relations_for_project(project_id)

        forest = build_task_tree(tasks, relations)
        logger.debug(f"Built task tree for project {project_id}: "
                     f"{len(forest)} roots, {count_nodes(forest)} nodes from {len(tasks)} tasks")
        return forest

    def get_relation_types(self) -> List[RelationType]:
        with self._reader("get relation types") as q:
            rows = q.get_all_relation_types()
        return [RelationType(**row) for row in rows]

    # Movement between columns

    def _append_to_column(self, q: Queries, task_id: int, column_id: int) -> int:
        """Place the task at the end of a column and return its new position."""
        count, max_position = q.get_column_occupancy(column_id)
        # Gaps left by moves and deletes can put count + 1 below the last task
        position = max(count, max_position) + 1
        q.move_task_to_column(task_id, column_id, position, current_timestamp())
        return position

    def _move(self, task_id: int, operation: str,
              resolve_target: Callable[[Queries, Dict[str, Any]], int]) -> None:
        _require_task_id(task_id)

        with self._transaction(operation) as q:
            current = self._require_task(q, task_id)
            target_column_id = resolve_target(q, current)
            position = self._append_to_column(q, task_id, target_column_id)

        logger.info(f"Moved task {task_id} to column {target_column_id} at position {position}")
        self._publish(current["project_id"])

    def move_task_to_next_column(self, task_id: int) -> None:
        def resolve(q: Queries, current: Dict[str, Any]) -> int:
            if current["next_id"] is None:
                raise AlreadyLastColumnError()
            return current["next_id"]

        self._move(task_id, "move task to next column", resolve)

    def move_task_to_prev_column(self, task_id: int) -> None:
        def resolve(q: Queries, current: Dict[str, Any]) -> int:
            if current["prev_id"] is None:
                raise AlreadyFirstColumnError()
            return current["prev_id"]

        self._move(task_id, "move task to previous column", resolve)

    def move_task_to_column(self, task_id: int, column_id: int) -> None:
        """Move a task to a specific column of its own project, appending it at the end."""
        if column_id <= 0:
            raise InvalidColumnIDError()

        def resolve(q: Queries, current: Dict[str, Any]) -> int:
            column = q.get_column(column_id)
            if column is None:
                raise ColumnNotFoundError()
            if column["project_id"] != current["project_id"]:
                raise InvalidColumnIDError("column belongs to a different project")
            if column_id == current["column_id"]:
                raise TaskAlreadyInTargetColumnError()
            return column_id

        self._move(task_id, "move task to column", resolve)

    def _move_to_role(self, task_id: int, role: ColumnRole) -> None:
        def resolve(q: Queries, current: Dict[str, Any]) -> int:
            column = q.get_column_by_role(current["project_id"], role.value)
            if column is None:
                raise ColumnRoleNotFoundError(role.value)
            if column["id"] == current["column_id"]:
                raise TaskAlreadyInTargetColumnError()
            return column["id"]

        self._move(task_id, f"move task to {role.value} column", resolve)

    def move_task_to_ready_column(self, task_id: int) -> None:
        self._move_to_role(task_id, ColumnRole.READY)

    def move_task_to_in_progress_column(self, task_id: int) -> None:
        self._move_to_role(task_id, ColumnRole.IN_PROGRESS)

    def move_task_to_completed_column(self, task_id: int) -> None:
        self._move_to_role(task_id, ColumnRole.COMPLETED)

    # Movement within a column

    def _swap(self, task_id: int, operation: str,
              find_neighbour: Callable[[Queries, int, int], Optional[Dict[str, Any]]],
              boundary_error: Callable[[], TaskBoardError]) -> None:
        _require_task_id(task_id)

        with self._transaction(operation) as q:
            current = self._require_task(q, task_id)
            neighbour = find_neighbour(q, current["column_id"], current["position"])
            if neighbour is None:
                raise boundary_error()

            # Stage through the sentinel so UNIQUE(column_id, position) holds after every statement
            now = current_timestamp()
            q.set_task_position(task_id, SENTINEL_POSITION, now)
            q.set_task_position(neighbour["id"], current["position"], now)
            q.set_task_position(task_id, neighbour["position"], now)

        self._publish(current["project_id"])

    def move_task_up(self, task_id: int) -> None:
        """Swap the task with the one directly above it in its column."""
        self._swap(task_id, "move task up",
                   lambda q, column_id, position: q.get_task_above(column_id, position),
                   AlreadyFirstTaskError)

    def move_task_down(self, task_id: int) -> None:
        """Swap the task with the one directly below it in its column."""
        self._swap(task_id, "move task down",
                   lambda q, column_id, position: q.get_task_below(column_id, position),
                   AlreadyLastTaskError)

    # Relationships

    def _add_relation(self, q: Queries, parent_id: int, child_id: int, relation_type_id: int) -> None:
        if parent_id == child_id:
            raise SelfRelationError()
        for task_id in (parent_id, child_id):
            if q.get_task(task_id) is None:
                raise TaskNotFoundError(f"task {task_id} not found")
        if q.get_relation(parent_id, child_id) is not None:
            raise DuplicateRelationError()
        q.add_relation(parent_id, child_id, relation_type_id)

    def _change_relation(self, task_id: int, operation: str,
                         change: Callable[[Queries], None]) -> None:
        with self._transaction(operation) as q:
            change(q)
            project_id = q.get_project_id_from_task(task_id)
        self._publish(project_id)

    def add_parent_relation(self, task_id: int, parent_id: int,
                            relation_type_id: int = RELATION_TYPE_PARENT_CHILD) -> None:
        """Link parent_id -> task_id (this task becomes the child)."""
        _validate_relation(task_id, parent_id)
        if relation_type_id not in RELATION_TYPE_IDS:
            raise InvalidRelationTypeError()
        self._change_relation(task_id, "add parent relation",
                              lambda q: self._add_relation(q, parent_id, task_id, relation_type_id))

    def add_child_relation(self, task_id: int, child_id: int,
                           relation_type_id: int = RELATION_TYPE_PARENT_CHILD) -> None:
        """Link task_id -> child_id (this task becomes the parent)."""
        _validate_relation(task_id, child_id)
        if relation_type_id not in RELATION_TYPE_IDS:
            raise InvalidRelationTypeError()
        self._change_relation(task_id, "add child relation",
                              lambda q: self._add_relation(q, task_id, child_id, relation_type_id))

    def remove_parent_relation(self, task_id: int, parent_id: int) -> None:
        _validate_relation(task_id, parent_id)
        self._change_relation(task_id, "remove parent relation",
                              lambda q: q.remove_relation(parent_id, task_id))

    def remove_child_relation(self, task_id: int, child_id: int) -> None:
        _validate_relation(task_id, child_id)
        self._change_relation(task_id, "remove child relation",
                              lambda q: q.remove_relation(task_id, child_id))

    # Labels

    def _attach_label(self, q: Queries, task_id: int, project_id: int, label_id: int) -> None:
        label = q.get_label(label_id)
        if label is None or label["project_id"] != project_id:
            raise LabelNotFoundError()
        if q.is_label_attached(task_id, label_id):
            raise DuplicateLabelError()
        q.add_label_to_task(task_id, label_id)

    def attach_label(self, task_id: int, label_id: int) -> None:
        _require_task_id(task_id)
        if label_id <= 0:
            raise InvalidLabelIDError()

        with self._transaction("attach label") as q:
            current = self._require_task(q, task_id)
            self._attach_label(q, task_id, current["project_id"], label_id)

        self._publish(current["project_id"])

    def detach_label(self, task_id: int, label_id: int) -> None:
        """Remove a label from a task; a label that is not attached is ignored."""
        _require_task_id(task_id)
        if label_id <= 0:
            raise InvalidLabelIDError()

        with self._transaction("detach label") as q:
            current = self._require_task(q, task_id)
            q.remove_label_from_task(task_id, label_id)

        self._publish(current["project_id"])

    # Comments

    def create_comment(self, request: CreateCommentRequest) -> Comment:
        _require_task_id(request.task_id)
        _validate_comment_message(request.message)

        with self._transaction("create comment") as q:
            current = q.get_task_position(request.task_id)
            if current is None:
                raise TaskNotFoundError()
            comment_id = q.create_comment(request.task_id, request.message, request.author,
                                          current_timestamp())
            row = q.get_comment(comment_id)

        self._publish(current["project_id"])
        return _to_comment(row)

    def update_comment(self, request: UpdateCommentRequest) -> None:
        if request.comment_id <= 0:
            raise InvalidCommentIDError()
        _validate_comment_message(request.message)

        with self._transaction("update comment") as q:
            comment = q.get_comment(request.comment_id)
            if comment is None:
                raise CommentNotFoundError()
            q.update_comment(request.comment_id, request.message, current_timestamp())
            project_id = q.get_project_id_from_task(comment["task_id"])

        self._publish(project_id)

    def delete_comment(self, comment_id: int) -> None:
        if comment_id <= 0:
            raise InvalidCommentIDError()

        with self._transaction("delete comment") as q:
            comment = q.get_comment(comment_id)
            if comment is None:
                raise CommentNotFoundError()
            q.delete_comment(comment_id)
            project_id = q.get_project_id_from_task(comment["task_id"])

        self._publish(project_id)

    def get_comments_by_task(self, task_id: int) -> List[Comment]:
        """Comments of a task, newest first."""
        _require_task_id(task_id)
        with self._reader("get comments") as q:
            rows = q.get_comments_by_task(task_id)
        return [_to_comment(row) for row in rows]
