"""Project names derived from task IDs (``{project}-{hash}``)."""

import re
from collections import Counter
from typing import Iterable

from .models import Task

ALL_PROJECTS = "All Projects"

_TASK_ID_RE = re.compile(r"^([a-zA-Z0-9_-]+?)-([a-zA-Z0-9]+)$")


def project_from_task_id(task_id: str) -> str | None:
    """``"chimaro-abc"`` → ``"chimaro"``; None when there is no project prefix."""
    if not task_id or not isinstance(task_id, str):
        return None
    m = _TASK_ID_RE.match(task_id)
    if not m:
        return None
    prefix = m.group(1)
    if not prefix.strip("-"):
        return None
    return prefix


def projects_from_tasks(tasks: Iterable[Task]) -> list[str]:
    names = {p for t in tasks if (p := project_from_task_id(t.id))}
    return [ALL_PROJECTS] + sorted(names, key=str.casefold)


def task_count_by_project(tasks: Iterable[Task]) -> dict[str, int]:
    counts = Counter(p for t in tasks if (p := project_from_task_id(t.id)))
    return dict(counts)


def filter_tasks_by_project(tasks: list[Task], project: str | None) -> list[Task]:
    if not project or project == ALL_PROJECTS:
        return tasks
    return [t for t in tasks
            if t.project == project or project_from_task_id(t.id) == project]
