"""In-memory log accumulator for tasks in flight.

Entries live here until the task terminates and the queue drains them into
``Task.logs``. Nothing is persisted before the drain, so entries for a task
whose process dies mid-execution are lost. A task picked up without
``init`` (recovered after a restart) gets its buffer on first ``append``.
"""

from typing import Dict, List

from app.schemas.task import TaskLogEntry


class TaskLogBuffer:
    def __init__(self):
        self._logs: Dict[str, List[TaskLogEntry]] = {}

    def init(self, task_id: str) -> None:
        self._logs[task_id] = []

    def append(self, task_id: str, entry: TaskLogEntry) -> None:
        self._logs.setdefault(task_id, []).append(entry)

    def drain(self, task_id: str) -> List[TaskLogEntry]:
        """Remove and return the buffered entries. A second drain returns []."""
        return self._logs.pop(task_id, [])

    def has(self, task_id: str) -> bool:
        return task_id in self._logs

    def clear(self) -> None:
        self._logs.clear()


task_log_buffer = TaskLogBuffer()
