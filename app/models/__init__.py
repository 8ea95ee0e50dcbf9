from app.models.company import Company
from app.models.lead import Lead
from app.models.deal import Deal
from app.models.task import Task
from app.models.pending_offer import PendingOffer
from app.models.email import EmailMessage
from app.models.invoice import Invoice
from app.models.research import MarketResearch
from app.models.audit import AuditLog
from app.models.setting import AppSetting

__all__ = [
    "Company",
    "Lead",
    "Deal",
    "Task",
    "PendingOffer",
    "EmailMessage",
    "Invoice",
    "MarketResearch",
    "AuditLog",
    "AppSetting",
]
