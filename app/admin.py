"""
SQLAdmin Configuration
======================
Web UI for browsing the pipeline tables (leads, deals, tasks, offers...).
Access at: http://localhost:8000/admin
"""

from sqladmin import Admin, ModelView
from app.models.company import Company
from app.models.lead import Lead
from app.models.deal import Deal
from app.models.task import Task
from app.models.pending_offer import PendingOffer
from app.models.invoice import Invoice
from app.models.email import EmailMessage
from app.models.research import MarketResearch
from app.models.audit import AuditLog


# ── Model Views ──────────────────────────────────────────

class CompanyAdmin(ModelView, model=Company):
    column_list = [Company.id, Company.name, Company.industry, Company.sender_email, Company.created_at]
    column_searchable_list = [Company.name]
    column_sortable_list = [Company.name, Company.created_at]
    name = "Company"
    name_plural = "Companies"
    icon = "fa-solid fa-building"


class LeadAdmin(ModelView, model=Lead):
    column_list = [Lead.id, Lead.company_name, Lead.contact_name, Lead.contact_email, Lead.status, Lead.lead_score, Lead.created_at]
    column_searchable_list = [Lead.company_name, Lead.contact_name, Lead.contact_email]
    column_sortable_list = [Lead.company_name, Lead.status, Lead.created_at]
    name = "Lead"
    name_plural = "Leads"
    icon = "fa-solid fa-user-plus"


class DealAdmin(ModelView, model=Deal):
    column_list = [Deal.id, Deal.lead_id, Deal.status, Deal.product_name, Deal.total_amount, Deal.negotiation_round, Deal.follow_up_count, Deal.updated_at]
    column_sortable_list = [Deal.status, Deal.total_amount, Deal.updated_at]
    name = "Deal"
    name_plural = "Deals"
    icon = "fa-solid fa-handshake"


class TaskAdmin(ModelView, model=Task):
    column_list = [Task.id, Task.source_role, Task.target_role, Task.task_type, Task.status, Task.priority, Task.created_at, Task.completed_at]
    column_searchable_list = [Task.task_type, Task.title]
    column_sortable_list = [Task.status, Task.priority, Task.created_at]
    name = "Task"
    name_plural = "Tasks"
    icon = "fa-solid fa-list-check"


class PendingOfferAdmin(ModelView, model=PendingOffer):
    column_list = [PendingOffer.id, PendingOffer.deal_id, PendingOffer.offer_product_name, PendingOffer.offer_total_amount, PendingOffer.round_number, PendingOffer.status, PendingOffer.created_at]
    column_sortable_list = [PendingOffer.status, PendingOffer.created_at]
    name = "Pending Offer"
    name_plural = "Pending Offers"
    icon = "fa-solid fa-file-contract"


class InvoiceAdmin(ModelView, model=Invoice):
    column_list = [Invoice.id, Invoice.invoice_number, Invoice.customer_name, Invoice.total_amount, Invoice.status, Invoice.created_at]
    column_searchable_list = [Invoice.invoice_number, Invoice.customer_name]
    column_sortable_list = [Invoice.invoice_number, Invoice.created_at]
    name = "Invoice"
    name_plural = "Invoices"
    icon = "fa-solid fa-file-invoice-dollar"


class EmailMessageAdmin(ModelView, model=EmailMessage):
    column_list = [EmailMessage.id, EmailMessage.direction, EmailMessage.email_type, EmailMessage.counterpart_email, EmailMessage.subject, EmailMessage.status, EmailMessage.created_at]
    column_searchable_list = [EmailMessage.subject, EmailMessage.counterpart_email]
    column_sortable_list = [EmailMessage.created_at]
    name = "Email"
    name_plural = "Emails"
    icon = "fa-solid fa-envelope"


class MarketResearchAdmin(ModelView, model=MarketResearch):
    column_list = [MarketResearch.id, MarketResearch.company_id, MarketResearch.trigger, MarketResearch.status, MarketResearch.created_at, MarketResearch.completed_at]
    column_sortable_list = [MarketResearch.created_at]
    name = "Market Research"
    name_plural = "Market Research"
    icon = "fa-solid fa-chart-line"


class AuditLogAdmin(ModelView, model=AuditLog):
    column_list = [AuditLog.id, AuditLog.actor, AuditLog.action, AuditLog.entity_type, AuditLog.entity_id, AuditLog.created_at]
    column_searchable_list = [AuditLog.action]
    column_sortable_list = [AuditLog.created_at]
    can_edit = False
    can_delete = False
    name = "Audit Entry"
    name_plural = "Audit Log"
    icon = "fa-solid fa-clipboard-list"


def setup_admin(app, engine):
    """Mount SQLAdmin on the FastAPI app."""
    admin = Admin(app, engine, title="AgentFlow Admin", base_url="/admin")

    admin.add_view(CompanyAdmin)
    admin.add_view(LeadAdmin)
    admin.add_view(DealAdmin)
    admin.add_view(TaskAdmin)
    admin.add_view(PendingOfferAdmin)
    admin.add_view(InvoiceAdmin)
    admin.add_view(EmailMessageAdmin)
    admin.add_view(MarketResearchAdmin)
    admin.add_view(AuditLogAdmin)

    return admin
