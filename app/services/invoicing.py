"""Invoice issuing for won deals.

``issue`` is idempotent per deal: the unique ``invoices.deal_id`` column is
the dedupe key, so a repeated or concurrent call returns the existing row
instead of numbering a second invoice.
"""
import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import SessionLocal, utcnow
from app.errors import AgentFlowError, EntityNotFoundError
from app.models.deal import Deal
from app.models.invoice import Invoice
from app.models.lead import Lead
from app.services import deal_state
from app.services.audit import record_audit

logger = logging.getLogger(__name__)


def next_invoice_number(db: Session, company_id: str, year: int) -> str:
    """Local numbering ``YYYY/NNN``, sequential per company and year."""
    prefix = f"{year}/"
    numbers = [
        row[0]
        for row in db.query(Invoice.invoice_number)
        .filter(Invoice.company_id == company_id, Invoice.invoice_number.like(f"{prefix}%"))
        .all()
    ]
    highest = 0
    for number in numbers:
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1:03d}"


class InvoiceService:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def get_for_deal(self, deal_id: str) -> Optional[Invoice]:
        db = self.session_factory()
        try:
            return db.query(Invoice).filter(Invoice.deal_id == deal_id).first()
        finally:
            db.close()

    def issue(self, deal_id: str, external_id: Optional[str] = None) -> Invoice:
        existing = self.get_for_deal(deal_id)
        if existing:
            logger.info("Invoice %s already issued for deal %s", existing.invoice_number, deal_id)
            return existing

        db = self.session_factory()
        try:
            deal = db.query(Deal).filter(Deal.id == deal_id).first()
            if not deal:
                raise EntityNotFoundError("Deal", deal_id)
            if deal_state.normalize_status(deal.status) != deal_state.CLOSED_WON:
                raise AgentFlowError(f"Deal {deal_id} is '{deal.status}', only won deals are invoiced")
            lead = db.query(Lead).filter(Lead.id == deal.lead_id).first()

            invoice = Invoice(
                company_id=deal.company_id,
                deal_id=deal.id,
                invoice_number=next_invoice_number(db, deal.company_id, utcnow().year),
                external_id=external_id,
                customer_name=lead.company_name if lead else "Customer",
                customer_email=lead.contact_email if lead else None,
                subtotal=deal.subtotal,
                tax_rate=deal.tax_rate,
                tax_amount=deal.tax_amount,
                total_amount=deal.total_amount,
            )
            db.add(invoice)
            record_audit(
                db, "accounting", "invoice_issued",
                company_id=deal.company_id, entity_type="deal", entity_id=deal.id,
                details={"invoice_number": invoice.invoice_number, "total_amount": deal.total_amount},
            )
            try:
                db.commit()
            except IntegrityError:
                # Another caller issued it between our check and insert
                db.rollback()
                logger.info("Invoice for deal %s issued concurrently, returning existing", deal_id)
                return db.query(Invoice).filter(Invoice.deal_id == deal_id).one()
            db.refresh(invoice)
        finally:
            db.close()

        logger.info("Invoice %s issued for deal %s (total=%.2f)", invoice.invoice_number, deal_id, invoice.total_amount)
        return invoice
