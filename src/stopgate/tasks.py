from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Protocol

LOGGER = logging.getLogger(__name__)

TASK_REF_RE = re.compile(r"@\.claude/tasks/(TASK_(\d+))\.md")
TASK_ID_IN_CONTENT_RE = re.compile(r"Task ID:\*\*\s*(\d+)")
TASK_MARKER = "TASK_"


@dataclass
class ActiveTask:
    content: str
    task_id: str | None = None

    @property
    def label(self) -> str:
        return self.task_id or "TASK"


class ActiveTaskLookup(Protocol):
    def active_task(self) -> ActiveTask | None: ...


def task_id_from_content(content: str) -> str | None:
    match = TASK_ID_IN_CONTENT_RE.search(content)
    return f"TASK_{match.group(1)}" if match else None


class ClaudeMdTaskLookup:
    """Read the active task referenced from the project's CLAUDE.md."""

    def __init__(self, project_root: str) -> None:
        self.project_root = project_root

    def _claude_md(self) -> str:
        path = os.path.join(self.project_root, "CLAUDE.md")
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return ""

    def active_task_id(self) -> str | None:
        match = TASK_REF_RE.search(self._claude_md())
        return match.group(1) if match else None

    def active_task(self) -> ActiveTask | None:
        task_id = self.active_task_id()
        if not task_id:
            return None
        task_path = os.path.join(self.project_root, ".claude", "tasks", f"{task_id}.md")
        try:
            with open(task_path, encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError:
            LOGGER.warning("Active task file missing: %s", task_path)
            return None
        return ActiveTask(content=content, task_id=task_id_from_content(content) or task_id)
