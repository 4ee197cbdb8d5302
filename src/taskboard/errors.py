"""
Domain errors for the task service.

Every error raised by the service derives from TaskBoardError so callers can
catch the whole family, while the intermediate classes (ValidationError,
NotFoundError, ConflictError, TransactionError) let a front end map failures
to distinct exit codes or HTTP statuses without parsing messages.
"""

from typing import Optional


class TaskBoardError(Exception):
    """Base class for all task board errors."""

    message = "task board error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


# Validation errors: always raised before any store access

class ValidationError(TaskBoardError):
    message = "invalid request"


class EmptyTitleError(ValidationError):
    message = "task title cannot be empty"


class TitleTooLongError(ValidationError):
    message = "task title cannot exceed 255 characters"


class InvalidColumnIDError(ValidationError):
    message = "invalid column ID"


class InvalidPositionError(ValidationError):
    message = "invalid position: must be >= 0"


class InvalidTaskIDError(ValidationError):
    message = "invalid task ID"


class InvalidPriorityError(ValidationError):
    message = "invalid priority ID"


class InvalidTypeError(ValidationError):
    message = "invalid type ID"


class InvalidLabelIDError(ValidationError):
    message = "invalid label ID"


class InvalidRelationTypeError(ValidationError):
    message = "invalid relation type ID"


class InvalidCommentIDError(ValidationError):
    message = "invalid comment ID"


class EmptyCommentMessageError(ValidationError):
    message = "comment message cannot be empty"


class CommentMessageTooLongError(ValidationError):
    message = "comment message cannot exceed 1000 characters"


class SelfRelationError(ValidationError):
    message = "task cannot have a relationship with itself"


class InvalidProjectIDError(ValidationError):
    message = "invalid project ID"


class EmptyNameError(ValidationError):
    message = "name cannot be empty"


class NameTooLongError(ValidationError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"name cannot exceed {limit} characters")


class InvalidColorError(ValidationError):
    message = "invalid color format (must be hex color like #FFFFFF)"


# Lookup failures

class NotFoundError(TaskBoardError):
    message = "not found"


class TaskNotFoundError(NotFoundError):
    message = "task not found"


class CommentNotFoundError(NotFoundError):
    message = "comment not found"


class ColumnNotFoundError(NotFoundError):
    message = "column not found"


class ProjectNotFoundError(NotFoundError):
    message = "project not found"


class LabelNotFoundError(NotFoundError):
    message = "label not found"


class ColumnRoleNotFoundError(NotFoundError):
    """No column in the project carries the requested workflow role."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"no {role.replace('_', '-')} column configured for this project")


# Benign conflicts: the request was understood but there is nothing to do

class ConflictError(TaskBoardError):
    message = "conflict"


class TaskAlreadyInTargetColumnError(ConflictError):
    message = "task is already in target column"


class AlreadyFirstTaskError(ConflictError):
    message = "task is already at the top of the column"


class AlreadyLastTaskError(ConflictError):
    message = "task is already at the bottom of the column"


class AlreadyFirstColumnError(ConflictError):
    message = "task is already in the first column"


class AlreadyLastColumnError(ConflictError):
    message = "task is already in the last column"


class DuplicateRelationError(ConflictError):
    message = "relationship already exists"


class DuplicateLabelError(ConflictError):
    message = "label is already attached to task"


class DuplicateLabelNameError(ConflictError):
    message = "a label with this name already exists in the project"


class ColumnHasTasksError(ConflictError):
    message = "cannot delete column with tasks"


class ProjectHasTasksError(ConflictError):
    message = "cannot delete project with tasks"


# Infrastructure failures

class TransactionError(TaskBoardError):
    """A store-level failure while running an operation; the work was rolled back."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"failed to {operation}: {cause}")


class NotifierError(TaskBoardError):
    """A change notification could not be delivered."""

    message = "failed to publish event"
