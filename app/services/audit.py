import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.audit import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    actor: str,
    action: str,
    company_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Add an audit row to ``db``; committed with the caller's transaction."""
    db.add(AuditLog(
        company_id=company_id,
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    ))
    logger.debug("Audit: %s %s %s:%s", actor, action, entity_type, entity_id)
