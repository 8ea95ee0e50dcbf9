from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal

from app.database import utcnow


AgentRole = Literal["marketing", "sales", "legal", "accounting", "email", "system"]


class TaskCreate(BaseModel):
    """What a producer hands to TaskQueue.create_task."""
    company_id: str
    source_role: AgentRole
    target_role: AgentRole
    task_type: str
    title: str
    description: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    deal_id: Optional[str] = None
    lead_id: Optional[str] = None
    priority: int = 0


class TaskLogEntry(BaseModel):
    type: Literal["agent_started", "agent_reasoning", "agent_completed", "agent_failed", "info", "warning"]
    role: str
    message: str
    reasoning: Optional[List[str]] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class TaskResponse(BaseModel):
    id: str
    company_id: str
    source_role: str
    target_role: str
    task_type: str
    title: str
    description: Optional[str] = None
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    status: str
    priority: int
    deal_id: Optional[str] = None
    lead_id: Optional[str] = None
    logs: Optional[List[Dict[str, Any]]] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
