"""
Pydantic models for the task board domain.

Domain models are what the service hands back to callers; request models
carry the inputs of the write operations. Request models only describe the
shape of the data: range and length rules are enforced by the service so
that each violation maps to its own typed error.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# Relation type catalog ids (seeded in the relation_types table)
RELATION_TYPE_PARENT_CHILD = 1
RELATION_TYPE_BLOCKING = 2
RELATION_TYPE_RELATED = 3

# Task type ids
TASK_TYPE_TASK = 1
TASK_TYPE_FEATURE = 2
TASK_TYPE_BUG = 3

# Priority ids
PRIORITY_TRIVIAL = 1
PRIORITY_LOW = 2
PRIORITY_MEDIUM = 3
PRIORITY_HIGH = 4
PRIORITY_CRITICAL = 5

MAX_TITLE_LENGTH = 255
MAX_COMMENT_LENGTH = 1000
MAX_PROJECT_NAME_LENGTH = 100
MAX_COLUMN_NAME_LENGTH = 50
MAX_LABEL_NAME_LENGTH = 50

# Transient position used while swapping two tasks; never valid at rest
SENTINEL_POSITION = -1


class ColumnRole(str, Enum):
    """Workflow roles a column can carry."""

    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def flag_column(self) -> str:
        return f"holds_{self.value}_tasks"


class Project(BaseModel):
    id: int
    name: str
    description: str = ""


class Column(BaseModel):
    """A board column; columns form a doubly linked list per project."""

    id: int
    name: str
    project_id: int
    prev_id: Optional[int] = None
    next_id: Optional[int] = None
    holds_ready_tasks: bool = False
    holds_in_progress_tasks: bool = False
    holds_completed_tasks: bool = False


class Label(BaseModel):
    id: int
    name: str
    color: str
    project_id: Optional[int] = None


class RelationType(BaseModel):
    id: int
    p_to_c_label: str
    c_to_p_label: str
    color: str
    is_blocking: bool = False


class Task(BaseModel):
    id: int
    title: str
    description: str = ""
    column_id: int
    position: int
    ticket_number: Optional[int] = None
    type_id: int
    priority_id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Comment(BaseModel):
    id: int
    task_id: int
    message: str
    author: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskReference(BaseModel):
    """Lightweight pointer to a task, optionally annotated with the relation that led to it."""

    id: int
    ticket_number: Optional[int] = None
    title: str
    project_name: str
    relation_type_id: Optional[int] = None
    relation_label: Optional[str] = None
    relation_color: Optional[str] = None
    is_blocking: bool = False


class TaskSummary(BaseModel):
    id: int
    title: str
    column_id: int
    position: int
    ticket_number: Optional[int] = None
    type_description: Optional[str] = None
    priority_description: Optional[str] = None
    priority_color: Optional[str] = None
    labels: List[Label] = Field(default_factory=list)
    is_blocked: bool = False


class TaskDetail(BaseModel):
    id: int
    title: str
    description: str = ""
    column_id: int
    column_name: str
    project_id: int
    project_name: str
    position: int
    ticket_number: Optional[int] = None
    type_description: Optional[str] = None
    priority_description: Optional[str] = None
    priority_color: Optional[str] = None
    labels: List[Label] = Field(default_factory=list)
    parent_tasks: List[TaskReference] = Field(default_factory=list)
    child_tasks: List[TaskReference] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    is_blocked: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskTreeNode(BaseModel):
    """
    One node of the project task forest.

    Relation fields describe the edge from the enclosing parent node; they are
    empty on roots. The same task may appear under several parents, each copy
    carrying the metadata of its own edge.
    """

    id: int
    ticket_number: Optional[int] = None
    title: str
    column_name: str = ""
    project_name: str = ""
    relation_label: Optional[str] = None
    relation_color: Optional[str] = None
    is_blocking: bool = False
    children: List["TaskTreeNode"] = Field(default_factory=list)


TaskTreeNode.model_rebuild()


# Request models

class CreateTaskRequest(BaseModel):
    """Inputs for creating a task. priority_id/type_id of 0 mean "use the store default"."""

    title: str
    description: str = ""
    column_id: int
    position: int = 0
    priority_id: int = 0
    type_id: int = 0
    label_ids: List[int] = Field(default_factory=list)
    parent_ids: List[int] = Field(default_factory=list)
    child_ids: List[int] = Field(default_factory=list)
    blocked_by_ids: List[int] = Field(default_factory=list)
    blocks_ids: List[int] = Field(default_factory=list)


class UpdateTaskRequest(BaseModel):
    """Sparse update: a field left as None is not changed."""

    task_id: int
    title: Optional[str] = None
    description: Optional[str] = None
    priority_id: Optional[int] = None
    type_id: Optional[int] = None


class CreateCommentRequest(BaseModel):
    task_id: int
    message: str
    author: str = ""


class UpdateCommentRequest(BaseModel):
    comment_id: int
    message: str


TaskBoard = Dict[int, List[TaskSummary]]
