"""
Relation graph builder.

Turns the flat task and relation rows of one project into a forest of
TaskTreeNode objects. The relation graph is not guaranteed to be acyclic, so
the walk keeps the ids on the current path and refuses to re-enter them, and
stops at a fixed depth as a second guard. A cycle with no edge coming in from
outside has no root and simply does not show up in the forest.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Set

from .models import TaskTreeNode

MAX_TREE_DEPTH = 100


@dataclass(frozen=True)
class _ChildEdge:
    child_id: int
    relation_label: str
    relation_color: str
    is_blocking: bool


def build_task_tree(tasks: Iterable[Mapping[str, Any]],
                    relations: Iterable[Mapping[str, Any]],
                    max_depth: int = MAX_TREE_DEPTH) -> List[TaskTreeNode]:
    """
    Build the task forest for a project.

    Args:
        tasks: Rows with id, ticket_number, title, column_name, project_name
        relations: Rows with parent_id, child_id, relation_label,
            relation_color, is_blocking
        max_depth: Deepest nesting level that is expanded

    Returns:
        Root nodes (tasks that are nobody's child) sorted by ticket number,
        each with its descendants attached
    """
    nodes: Dict[int, Dict[str, Any]] = {}
    for row in tasks:
        nodes[row["id"]] = {
            "id": row["id"],
            "ticket_number": row.get("ticket_number"),
            "title": row["title"],
            "column_name": row.get("column_name") or "",
            "project_name": row.get("project_name") or "",
        }

    if not nodes:
        return []

    has_parent: Set[int] = set()
    children_by_parent: Dict[int, List[_ChildEdge]] = defaultdict(list)
    for rel in relations:
        has_parent.add(rel["child_id"])
        children_by_parent[rel["parent_id"]].append(_ChildEdge(
            child_id=rel["child_id"],
            relation_label=rel["relation_label"],
            relation_color=rel["relation_color"],
            is_blocking=bool(rel["is_blocking"]),
        ))

    path: Set[int] = set()

    def build_children(parent_id: int, depth: int) -> List[TaskTreeNode]:
        if depth > max_depth:
            return []

        path.add(parent_id)
        try:
            result = []
            for edge in children_by_parent.get(parent_id, ()):
                child = nodes.get(edge.child_id)
                # Relations may point at tasks that were deleted or live elsewhere
                if child is None or edge.child_id in path:
                    continue
                result.append(TaskTreeNode(
                    **child,
                    relation_label=edge.relation_label,
                    relation_color=edge.relation_color,
                    is_blocking=edge.is_blocking,
                    children=build_children(edge.child_id, depth + 1),
                ))
            return result
        finally:
            path.discard(parent_id)

    roots = [
        TaskTreeNode(**node, children=build_children(task_id, 0))
        for task_id, node in nodes.items()
        if task_id not in has_parent
    ]

    roots.sort(key=lambda node: (node.ticket_number is None, node.ticket_number or 0, node.id))
    return roots


def count_nodes(forest: Iterable[TaskTreeNode]) -> int:
    """Total number of nodes in a forest, roots included."""
    total = 0
    stack = list(forest)
    while stack:
        node = stack.pop()
        total += 1
        stack.extend(node.children)
    return total
