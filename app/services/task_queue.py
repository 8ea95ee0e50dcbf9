"""Task queue: creation, claiming and termination of cross-agent work.

Tasks are rows in the ``tasks`` table; the queue adds the status discipline
(pending -> processing -> completed|failed, terminal states final) and owns
the per-task log buffer.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from app.database import SessionLocal, utcnow
from app.models.task import Task
from app.schemas.task import TaskCreate, TaskLogEntry
from app.services.task_logger import TaskLogBuffer, task_log_buffer

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")


class TaskQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        log_buffer: TaskLogBuffer = task_log_buffer,
    ):
        self.session_factory = session_factory
        self.log_buffer = log_buffer

    # ── Producers ──

    def create_task(self, spec: TaskCreate) -> str:
        """Persist a new pending task and start its log buffer."""
        db = self.session_factory()
        try:
            task = Task(
                company_id=spec.company_id,
                source_role=spec.source_role,
                target_role=spec.target_role,
                task_type=spec.task_type,
                title=spec.title,
                description=spec.description,
                input_data=spec.input_data,
                deal_id=spec.deal_id,
                lead_id=spec.lead_id,
                priority=spec.priority,
                status="pending",
            )
            db.add(task)
            db.commit()
            task_id = task.id
        finally:
            db.close()

        self.log_buffer.init(task_id)
        logger.info("Task created: [%s -> %s] %s (id=%s)", spec.source_role, spec.target_role, spec.title, task_id)
        return task_id

    def create_and_track(self, spec: TaskCreate) -> str:
        """Create a task that the caller executes right away (skips the pending backlog)."""
        task_id = self.create_task(spec)
        self.start_processing(task_id)
        return task_id

    # ── Consumer ──

    def start_processing(self, task_id: str) -> None:
        db = self.session_factory()
        try:
            updated = (
                db.query(Task)
                .filter(Task.id == task_id, Task.status == "pending")
                .update({"status": "processing", "started_at": utcnow()}, synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if not updated:
            logger.debug("start_processing ignored for task %s (missing or not pending)", task_id)

    def log(self, task_id: str, entry: TaskLogEntry) -> None:
        self.log_buffer.append(task_id, entry)

    def complete(self, task_id: str, output: Optional[Dict[str, Any]] = None) -> bool:
        """Mark a task completed. Returns False (and changes nothing) if already terminal."""
        return self._terminate(task_id, "completed", {"output_data": output})

    def fail(self, task_id: str, error_message: str) -> bool:
        """Mark a task failed. Returns False (and changes nothing) if already terminal."""
        return self._terminate(task_id, "failed", {"error_message": error_message})

    def _terminate(self, task_id: str, status: str, fields: Dict[str, Any]) -> bool:
        drained = self.log_buffer.drain(task_id)

        db = self.session_factory()
        try:
            task = db.query(Task).filter(Task.id == task_id).first()
            if not task:
                logger.warning("Cannot mark task %s %s: not found", task_id, status)
                return False

            logs = list(task.logs or [])
            logs.extend(entry.model_dump(mode="json") for entry in drained)

            # Guarded UPDATE: a concurrent or repeated terminate matches zero rows
            values = {"status": status, "completed_at": utcnow(), "logs": logs, **fields}
            updated = (
                db.query(Task)
                .filter(Task.id == task_id, Task.status.notin_(TERMINAL_STATUSES))
                .update(values, synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if not updated:
            logger.info("Task %s already terminal; ignoring %s", task_id, status)
            return False

        if status == "failed":
            logger.warning("Task failed: %s (%s)", task_id, fields.get("error_message"))
        else:
            logger.info("Task completed: %s", task_id)
        return True

    # ── Queries ──

    def get_pending(self, target_role: str, scope_id: str) -> List[Task]:
        db = self.session_factory()
        try:
            return (
                db.query(Task)
                .filter(
                    Task.target_role == target_role,
                    Task.company_id == scope_id,
                    Task.status == "pending",
                )
                .order_by(Task.priority.desc(), Task.created_at.asc())
                .all()
            )
        finally:
            db.close()

    def get_task(self, task_id: str) -> Optional[Task]:
        db = self.session_factory()
        try:
            return db.query(Task).filter(Task.id == task_id).first()
        finally:
            db.close()

    def get_task_input(self, task_id: str) -> Optional[Dict[str, Any]]:
        task = self.get_task(task_id)
        if not task:
            return None
        return task.input_data or {}

    def find_stale(
        self,
        pending_threshold: timedelta,
        processing_threshold: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Task]:
        """Pending tasks never claimed, or processing tasks whose executor went quiet."""
        now = now or utcnow()
        pending_cutoff = now - pending_threshold
        processing_cutoff = now - processing_threshold

        db = self.session_factory()
        try:
            return (
                db.query(Task)
                .filter(
                    or_(
                        and_(Task.status == "pending", Task.created_at <= pending_cutoff),
                        and_(
                            Task.status == "processing",
                            or_(
                                Task.started_at <= processing_cutoff,
                                and_(Task.started_at.is_(None), Task.created_at <= processing_cutoff),
                            ),
                        ),
                    )
                )
                .order_by(Task.created_at.asc())
                .all()
            )
        finally:
            db.close()
