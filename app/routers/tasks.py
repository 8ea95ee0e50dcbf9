from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.errors import EntityNotFoundError
from app.models.task import Task
from app.schemas.task import TaskResponse

router = APIRouter(prefix="/api/tasks", tags=["Tasks"])


@router.get("", response_model=List[TaskResponse])
def list_tasks(
    status: Optional[str] = Query(None),
    target_role: Optional[str] = Query(None),
    deal_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """
    List tasks, newest first. Failed tasks of non-retryable roles show up
    here for manual review.
    """
    query = db.query(Task)
    if status:
        query = query.filter(Task.status == status)
    if target_role:
        query = query.filter(Task.target_role == target_role)
    if deal_id:
        query = query.filter(Task.deal_id == deal_id)
    return query.order_by(Task.created_at.desc()).limit(limit).all()


@router.get("/{task_id}", response_model=TaskResponse)
def get_task(task_id: str, db: Session = Depends(get_db)):
    task = db.query(Task).filter(Task.id == task_id).first()
    if not task:
        raise EntityNotFoundError("Task", task_id)
    return task
