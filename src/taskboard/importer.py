"""
YAML Board Importer

Seeds a complete board (project, columns with workflow roles, labels, tasks,
relations and comments) from a YAML document. Tasks go through the
TaskService so they get ticket numbers, validation and change events exactly
as interactive writes do.

Document layout::

    project:
      name: Demo
      description: optional
    columns:
      - {name: Todo, role: ready}
      - {name: In Progress, role: in_progress}
      - {name: Done, role: completed}
    labels:
      - {name: backend, color: "#2563EB"}
    tasks:
      - key: schema
        title: Design schema
        column: Todo
        priority: high
        type: feature
        labels: [backend]
        blocked_by: [other-key]
        comments:
          - {message: First draft is up, author: sam}
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import DuplicateRelationError, TaskBoardError
from .models import (
    PRIORITY_CRITICAL,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    PRIORITY_TRIVIAL,
    RELATION_TYPE_BLOCKING,
    RELATION_TYPE_PARENT_CHILD,
    RELATION_TYPE_RELATED,
    TASK_TYPE_BUG,
    TASK_TYPE_FEATURE,
    TASK_TYPE_TASK,
    ColumnRole,
    CreateCommentRequest,
    CreateTaskRequest,
)
from .service import TaskService

logger = logging.getLogger(__name__)

PRIORITY_NAMES = {
    "trivial": PRIORITY_TRIVIAL,
    "low": PRIORITY_LOW,
    "medium": PRIORITY_MEDIUM,
    "high": PRIORITY_HIGH,
    "critical": PRIORITY_CRITICAL,
}

TYPE_NAMES = {
    "task": TASK_TYPE_TASK,
    "feature": TASK_TYPE_FEATURE,
    "bug": TASK_TYPE_BUG,
}

# YAML key -> (relation type, True when the importing task is the parent side)
RELATION_KEYS = {
    "parents": (RELATION_TYPE_PARENT_CHILD, False),
    "children": (RELATION_TYPE_PARENT_CHILD, True),
    "blocked_by": (RELATION_TYPE_BLOCKING, True),
    "blocks": (RELATION_TYPE_BLOCKING, False),
    "related": (RELATION_TYPE_RELATED, True),
}


def _require_list(data: Dict[str, Any], key: str) -> List[Any]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"YAML '{key}' must be a list")
    return value


def _lookup_id(value: Union[int, str, None], names: Dict[str, int], what: str) -> int:
    """Resolve a priority/type given by name or id; None means the store default (0)."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        return names[str(value).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown {what} '{value}'") from None


def _validate_structure(data: Any) -> None:
    """Reject documents whose overall shape is wrong before anything is written."""
    if not isinstance(data, dict):
        raise ValueError("YAML document must be a mapping")

    project = data.get("project")
    if not isinstance(project, dict) or not project.get("name"):
        raise ValueError("YAML 'project' must be a mapping with a name")

    columns = _require_list(data, "columns")
    if not columns:
        raise ValueError("YAML 'columns' must list at least one column")

    seen_roles = set()
    for column in columns:
        if not isinstance(column, dict) or not column.get("name"):
            raise ValueError("Each column must be a mapping with a name")
        role = column.get("role")
        if role is None:
            continue
        try:
            role = ColumnRole(role)
        except ValueError:
            raise ValueError(f"Unknown column role '{role}'") from None
        if role in seen_roles:
            raise ValueError(f"More than one column has role '{role.value}'")
        seen_roles.add(role)

    for label in _require_list(data, "labels"):
        if not isinstance(label, dict) or not label.get("name"):
            raise ValueError("Each label must be a mapping with a name")

    for task in _require_list(data, "tasks"):
        if not isinstance(task, dict):
            raise ValueError("Each task must be a mapping")


def import_board(service: TaskService, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import a board from parsed YAML.

    Structural problems abort the import before any write. Problems with an
    individual task, relation or comment are recorded in the returned
    statistics and the import carries on with the rest.

    Args:
        service: TaskService to write through
        data: Parsed YAML document

    Returns:
        Dict with project_id, per-kind counters and an "errors" list

    Raises:
        ValueError: For a malformed document
    """
    _validate_structure(data)

    stats: Dict[str, Any] = {
        "project_id": None,
        "columns_created": 0,
        "labels_created": 0,
        "tasks_created": 0,
        "relations_created": 0,
        "comments_created": 0,
        "errors": [],
    }

    project = data["project"]
    project_id = service.db.create_project(project["name"], project.get("description") or "")
    stats["project_id"] = project_id

    column_ids: Dict[str, int] = {}
    for column in data["columns"]:
        role = column.get("role")
        column_ids[column["name"]] = service.db.create_column(
            project_id,
            column["name"],
            holds_ready_tasks=role == ColumnRole.READY.value,
            holds_in_progress_tasks=role == ColumnRole.IN_PROGRESS.value,
            holds_completed_tasks=role == ColumnRole.COMPLETED.value,
        )
        stats["columns_created"] += 1
    default_column = data["columns"][0]["name"]

    label_ids: Dict[str, int] = {}
    for label in data.get("labels") or []:
        try:
            label_ids[label["name"]] = service.db.create_label(
                project_id, label["name"], label.get("color") or "#7D56F4")
            stats["labels_created"] += 1
        except (sqlite3.Error, TaskBoardError) as e:
            stats["errors"].append(f"Failed to import label '{label['name']}': {e}")

    # First pass: tasks, labels and comments
    task_ids: Dict[str, int] = {}
    next_position: Dict[int, int] = {}
    tasks = data.get("tasks") or []
    for task_data in tasks:
        key = str(task_data.get("key") or task_data.get("title") or "")
        try:
            task_id = _import_task(service, task_data, column_ids, default_column, label_ids, next_position)
        except (TaskBoardError, ValueError) as e:
            stats["errors"].append(f"Failed to import task '{key or 'unnamed'}': {e}")
            continue

        if key in task_ids:
            stats["errors"].append(f"Duplicate task key '{key}'; relations use the first task")
        else:
            task_ids[key] = task_id
        stats["tasks_created"] += 1

        for comment in task_data.get("comments") or []:
            try:
                if isinstance(comment, str):
                    comment = {"message": comment}
                service.create_comment(CreateCommentRequest(
                    task_id=task_id,
                    message=comment.get("message", ""),
                    author=comment.get("author") or "",
                ))
                stats["comments_created"] += 1
            except TaskBoardError as e:
                stats["errors"].append(f"Failed to import comment on '{key}': {e}")

    # Second pass: relations, once every key has an id
    for task_data in tasks:
        key = str(task_data.get("key") or task_data.get("title") or "")
        task_id = task_ids.get(key)
        if task_id is None:
            continue
        for relation_key, (relation_type_id, is_parent) in RELATION_KEYS.items():
            for other_key in task_data.get(relation_key) or []:
                other_id = task_ids.get(str(other_key))
                if other_id is None:
                    stats["errors"].append(f"Task '{key}' {relation_key} unknown task '{other_key}'")
                    continue
                try:
                    if is_parent:
                        service.add_child_relation(task_id, other_id, relation_type_id)
                    else:
                        service.add_parent_relation(task_id, other_id, relation_type_id)
                    stats["relations_created"] += 1
                except DuplicateRelationError:
                    # Both ends of an edge may declare it
                    logger.debug(f"Skipping duplicate relation {key} -> {other_key}")
                except TaskBoardError as e:
                    stats["errors"].append(f"Failed to relate '{key}' to '{other_key}': {e}")

    logger.info(f"Imported board '{project['name']}' as project {project_id}: "
                f"{stats['tasks_created']} tasks, {stats['relations_created']} relations, "
                f"{len(stats['errors'])} errors")
    return stats


def _import_task(service: TaskService, task_data: Dict[str, Any], column_ids: Dict[str, int],
                 default_column: str, label_ids: Dict[str, int],
                 next_position: Dict[int, int]) -> int:
    """Create a single task at the end of its column and return its id."""
    column_name = task_data.get("column") or default_column
    column_id = column_ids.get(column_name)
    if column_id is None:
        raise ValueError(f"Unknown column '{column_name}'")

    labels: List[int] = []
    for name in task_data.get("labels") or []:
        if name not in label_ids:
            raise ValueError(f"Unknown label '{name}'")
        labels.append(label_ids[name])

    position = next_position.get(column_id, 1)
    task = service.create_task(CreateTaskRequest(
        title=str(task_data.get("title") or ""),
        description=task_data.get("description") or "",
        column_id=column_id,
        position=position,
        priority_id=_lookup_id(task_data.get("priority"), PRIORITY_NAMES, "priority"),
        type_id=_lookup_id(task_data.get("type"), TYPE_NAMES, "type"),
        label_ids=labels,
    ))
    next_position[column_id] = position + 1
    return task.id


def import_board_from_file(service: TaskService, path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML file and import it.

    Raises:
        ValueError: If the file is not valid YAML or not a board document
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            data: Optional[Any] = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
    return import_board(service, data)
