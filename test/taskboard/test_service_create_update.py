"""
Tests for task creation, sparse updates, deletion and read views.
"""

from unittest.mock import MagicMock

import pytest

from taskboard.database import TaskBoardDatabase
from taskboard.errors import (
    ColumnNotFoundError,
    EmptyTitleError,
    InvalidColumnIDError,
    InvalidLabelIDError,
    InvalidPositionError,
    InvalidPriorityError,
    InvalidTaskIDError,
    InvalidTypeError,
    LabelNotFoundError,
    TaskNotFoundError,
    TitleTooLongError,
    TransactionError,
    ValidationError,
)
from taskboard.models import (
    PRIORITY_HIGH,
    PRIORITY_MEDIUM,
    TASK_TYPE_BUG,
    TASK_TYPE_TASK,
    CreateTaskRequest,
    UpdateTaskRequest,
)
from taskboard.service import TaskService


def count_tasks(db):
    with db.read() as cursor:
        cursor.execute("SELECT COUNT(*) FROM tasks")
        return cursor.fetchone()[0]


class TestCreateValidation:
    """Invalid requests are rejected before the store is touched."""

    @pytest.fixture
    def offline_service(self):
        database = MagicMock(spec=TaskBoardDatabase)
        return TaskService(database), database

    @pytest.mark.parametrize("overrides, error", [
        ({"title": ""}, EmptyTitleError),
        ({"title": "x" * 256}, TitleTooLongError),
        ({"column_id": 0}, InvalidColumnIDError),
        ({"column_id": -3}, InvalidColumnIDError),
        ({"position": -1}, InvalidPositionError),
        ({"priority_id": -1}, InvalidPriorityError),
        ({"type_id": -1}, InvalidTypeError),
        ({"label_ids": [1, 0]}, InvalidLabelIDError),
        ({"parent_ids": [0]}, InvalidTaskIDError),
        ({"child_ids": [-2]}, InvalidTaskIDError),
        ({"blocked_by_ids": [0]}, InvalidTaskIDError),
        ({"blocks_ids": [0]}, InvalidTaskIDError),
    ])
    def test_invalid_create_request(self, offline_service, overrides, error):
        service, database = offline_service
        fields = {"title": "Valid", "column_id": 1, "position": 0}
        fields.update(overrides)

        with pytest.raises(error):
            service.create_task(CreateTaskRequest(**fields))

        database.transaction.assert_not_called()
        database.read.assert_not_called()

    def test_validation_errors_share_base_class(self, offline_service):
        service, _ = offline_service
        with pytest.raises(ValidationError):
            service.create_task(CreateTaskRequest(title="", column_id=1))

    def test_title_at_limit_is_accepted(self, service, board):
        task = service.create_task(CreateTaskRequest(title="x" * 255, column_id=board.todo, position=1))
        assert len(task.title) == 255


class TestCreateTask:
    """Task creation, ticket numbering and atomicity."""

    def test_create_returns_task_with_defaults(self, service, board):
        task = service.create_task(CreateTaskRequest(
            title="Write docs", description="All of them", column_id=board.todo, position=1))

        assert task.id > 0
        assert task.title == "Write docs"
        assert task.description == "All of them"
        assert task.column_id == board.todo
        assert task.position == 1
        assert task.ticket_number == 1
        assert task.priority_id == PRIORITY_MEDIUM
        assert task.type_id == TASK_TYPE_TASK
        assert task.created_at is not None

    def test_ticket_numbers_increase_per_project(self, make_task, board):
        first = make_task("One")
        second = make_task("Two")
        other = make_task("Elsewhere", column_id=board.other_column)
        third = make_task("Three", column_id=board.done)

        assert (first.ticket_number, second.ticket_number, third.ticket_number) == (1, 2, 3)
        assert other.ticket_number == 1

    def test_priority_and_type_applied(self, make_task):
        task = make_task("Crash on start", priority_id=PRIORITY_HIGH, type_id=TASK_TYPE_BUG)
        assert task.priority_id == PRIORITY_HIGH
        assert task.type_id == TASK_TYPE_BUG

    def test_missing_column(self, service, board):
        with pytest.raises(ColumnNotFoundError):
            service.create_task(CreateTaskRequest(title="Lost", column_id=9999))

    def test_create_with_labels_and_relations(self, service, make_task, board):
        parent = make_task("Parent")
        child = make_task("Child")
        blocker = make_task("Blocker")
        blocked = make_task("Blocked")

        task = make_task(
            "Middle",
            label_ids=[board.bug_label, board.ui_label],
            parent_ids=[parent.id],
            child_ids=[child.id],
            blocked_by_ids=[blocker.id],
            blocks_ids=[blocked.id],
        )

        detail = service.get_task_detail(task.id)
        assert {label.name for label in detail.labels} == {"bug", "ui"}
        parents = {ref.id: ref for ref in detail.parent_tasks}
        children = {ref.id: ref for ref in detail.child_tasks}

        # parent_ids -> (parent, new); blocks_ids -> (blocked, new)
        assert set(parents) == {parent.id, blocked.id}
        assert parents[parent.id].relation_label == "Parent"
        assert parents[blocked.id].relation_label == "Blocked By"
        # child_ids -> (new, child); blocked_by_ids -> (new, blocker)
        assert set(children) == {child.id, blocker.id}
        assert children[blocker.id].relation_label == "Blocker"
        assert children[blocker.id].is_blocking is True

        assert detail.is_blocked is True
        assert service.get_task_detail(blocked.id).is_blocked is True
        assert service.get_task_detail(blocker.id).is_blocked is False

    def test_failed_label_rolls_back_everything(self, service, make_task, board, db, publisher):
        make_task("First")
        publisher.clear()

        with pytest.raises(LabelNotFoundError):
            make_task("Broken", label_ids=[board.other_label])

        assert count_tasks(db) == 1
        assert publisher.events == []
        # The ticket number was not consumed
        assert make_task("Second").ticket_number == 2

    def test_missing_related_task_rolls_back(self, make_task, db):
        with pytest.raises(TaskNotFoundError):
            make_task("Orphan", parent_ids=[9999])
        assert count_tasks(db) == 0

    def test_position_collision_is_transaction_error(self, service, board, db):
        service.create_task(CreateTaskRequest(title="Taken", column_id=board.todo, position=1))

        with pytest.raises(TransactionError) as exc_info:
            service.create_task(CreateTaskRequest(title="Clash", column_id=board.todo, position=1))

        assert exc_info.value.operation == "create task"
        assert exc_info.value.__cause__ is not None
        assert count_tasks(db) == 1

    def test_create_publishes_once(self, make_task, board, publisher):
        make_task("Noisy")
        assert publisher.project_ids() == [board.project_id]
        assert publisher.events[0].type.value == "db_changed"


class TestUpdateTask:
    """Sparse updates."""

    def test_update_title_only_keeps_description(self, service, make_task):
        task = make_task("Old", description="Keep me")
        service.update_task(UpdateTaskRequest(task_id=task.id, title="New"))

        updated = service.get_task(task.id)
        assert updated.title == "New"
        assert updated.description == "Keep me"

    def test_update_description_only_keeps_title(self, service, make_task):
        task = make_task("Stable", description="Before")
        service.update_task(UpdateTaskRequest(task_id=task.id, description="After"))

        updated = service.get_task(task.id)
        assert updated.title == "Stable"
        assert updated.description == "After"

    def test_update_priority_and_type(self, service, make_task):
        task = make_task("Retype")
        service.update_task(UpdateTaskRequest(task_id=task.id, priority_id=PRIORITY_HIGH, type_id=TASK_TYPE_BUG))

        updated = service.get_task(task.id)
        assert updated.priority_id == PRIORITY_HIGH
        assert updated.type_id == TASK_TYPE_BUG
        assert updated.title == "Retype"

    def test_update_missing_task(self, service, board):
        with pytest.raises(TaskNotFoundError):
            service.update_task(UpdateTaskRequest(task_id=9999, title="Ghost"))

    @pytest.mark.parametrize("fields, error", [
        ({"task_id": 0, "title": "x"}, InvalidTaskIDError),
        ({"task_id": 1, "title": ""}, EmptyTitleError),
        ({"task_id": 1, "title": "y" * 256}, TitleTooLongError),
        ({"task_id": 1, "priority_id": 0}, InvalidPriorityError),
        ({"task_id": 1, "type_id": 0}, InvalidTypeError),
    ])
    def test_update_validation(self, fields, error):
        database = MagicMock(spec=TaskBoardDatabase)
        with pytest.raises(error):
            TaskService(database).update_task(UpdateTaskRequest(**fields))
        database.transaction.assert_not_called()

    def test_update_publishes(self, service, make_task, publisher, board):
        task = make_task("Announce")
        publisher.clear()
        service.update_task(UpdateTaskRequest(task_id=task.id, title="Announced"))
        assert publisher.project_ids() == [board.project_id]


class TestDeleteTask:
    """Deletion."""

    def test_delete_removes_task(self, service, make_task):
        task = make_task("Short lived")
        service.delete_task(task.id)
        with pytest.raises(TaskNotFoundError):
            service.get_task_detail(task.id)

    def test_delete_missing_task_is_not_an_error(self, service, board, publisher):
        service.delete_task(9999)
        assert publisher.events == []

    def test_delete_invalid_id(self, service):
        with pytest.raises(InvalidTaskIDError):
            service.delete_task(0)

    def test_delete_cascades_relations(self, service, make_task):
        parent = make_task("Parent")
        child = make_task("Child", parent_ids=[parent.id])

        service.delete_task(parent.id)

        assert service.get_task_detail(child.id).parent_tasks == []

    def test_deleted_ticket_number_is_not_reused(self, service, make_task):
        make_task("One")
        two = make_task("Two")
        service.delete_task(two.id)
        assert make_task("Three").ticket_number == 3


class TestReadViews:
    """Detail and summary reads."""

    def test_detail_fields(self, service, make_task, board):
        task = make_task("Detailed", description="Body", priority_id=PRIORITY_HIGH, label_ids=[board.bug_label])
        detail = service.get_task_detail(task.id)

        assert detail.column_name == "Todo"
        assert detail.project_id == board.project_id
        assert detail.project_name == "Main"
        assert detail.priority_description == "high"
        assert detail.priority_color.startswith("#")
        assert detail.type_description == "task"
        assert [label.name for label in detail.labels] == ["bug"]
        assert detail.comments == []
        assert detail.is_blocked is False

    def test_detail_missing_task(self, service, board):
        with pytest.raises(TaskNotFoundError):
            service.get_task_detail(9999)

    def test_summaries_grouped_by_column(self, service, make_task, board):
        first = make_task("First")
        second = make_task("Second")
        done = make_task("Finished", column_id=board.done)
        make_task("Not mine", column_id=board.other_column)

        grouped = service.get_task_summaries_by_project(board.project_id)

        assert set(grouped) == {board.todo, board.done}
        assert [summary.id for summary in grouped[board.todo]] == [first.id, second.id]
        assert [summary.id for summary in grouped[board.done]] == [done.id]

    def test_summary_labels(self, service, make_task, board):
        task = make_task("Labelled", label_ids=[board.bug_label, board.ui_label])
        summary = service.get_task_summaries_by_project(board.project_id)[board.todo][0]

        assert summary.id == task.id
        assert {(label.name, label.color) for label in summary.labels} == {("bug", "#EF4444"), ("ui", "#22C55E")}

    def test_summary_without_labels(self, service, make_task, board):
        make_task("Plain")
        summary = service.get_task_summaries_by_project(board.project_id)[board.todo][0]
        assert summary.labels == []

    def test_filtered_summaries(self, service, make_task, board):
        make_task("Fix login bug")
        make_task("Write release notes")
        make_task("LOGIN page styling", column_id=board.doing)

        grouped = service.get_task_summaries_by_project_filtered(board.project_id, "login")
        titles = sorted(summary.title for summaries in grouped.values() for summary in summaries)
        assert titles == ["Fix login bug", "LOGIN page styling"]

    def test_empty_project(self, service, board):
        assert service.get_task_summaries_by_project(board.project_id) == {}
        assert service.get_task_tree_by_project(board.project_id) == []

    def test_task_references_ordered_by_ticket(self, service, make_task, board):
        make_task("A", column_id=board.done)
        make_task("B")
        references = service.get_task_references_for_project(board.project_id)
        assert [(ref.ticket_number, ref.title, ref.project_name) for ref in references] == [
            (1, "A", "Main"), (2, "B", "Main"),
        ]
