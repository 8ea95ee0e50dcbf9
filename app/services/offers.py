"""Pending offers: drafted prices that wait for a human before they are sent.

A deal has at most one unresolved (``pending``) offer. Approval recomputes
the final pricing from the possibly edited draft fields, delivers the offer
document, and only then writes the deal pricing and moves the deal to
``offer_sent``. A failed delivery leaves the offer pending so it can be
approved again.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Set

from sqlalchemy.orm import Session

from app.database import SessionLocal, utcnow
from app.errors import DeliveryError, EntityNotFoundError, InvalidTransitionError, OfferConflictError
from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.models.pending_offer import PendingOffer
from app.schemas.negotiation import PricingDecision
from app.schemas.offer import OfferEdits
from app.schemas.task import TaskCreate, TaskLogEntry
from app.services import deal_state
from app.services.audit import record_audit
from app.services.documents import render_offer
from app.services.mail_transport import Attachment, Mailer, ThreadRefs
from app.services.task_queue import TaskQueue
from app.websocket.manager import emit_event

logger = logging.getLogger(__name__)


class OfferService:
    def __init__(
        self,
        task_queue: TaskQueue,
        mailer: Mailer,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.task_queue = task_queue
        self.mailer = mailer
        self.session_factory = session_factory
        # Offers whose approval is being delivered right now
        self._approving: Set[str] = set()

    # ── Drafting ──

    def create_draft(
        self,
        db: Session,
        deal: Deal,
        decision: PricingDecision,
        thread_refs: Optional[ThreadRefs],
        round_number: int,
    ) -> PendingOffer:
        """Add a pending offer to ``db`` (the caller commits with its deal update)."""
        unresolved = (
            db.query(PendingOffer)
            .filter(PendingOffer.deal_id == deal.id, PendingOffer.status == "pending")
            .first()
        )
        if unresolved:
            raise OfferConflictError(f"Deal {deal.id} already has pending offer {unresolved.id}")

        draft = decision.draft
        offer = PendingOffer(
            company_id=deal.company_id,
            deal_id=deal.id,
            lead_id=deal.lead_id,
            action=decision.action,
            offer_product_name=draft.product_name,
            offer_quantity=draft.quantity,
            offer_unit_price=draft.unit_price,
            offer_tax_rate=draft.tax_rate,
            offer_subtotal=draft.subtotal,
            offer_tax_amount=draft.tax_amount,
            offer_total_amount=draft.total_amount,
            offer_summary=draft.summary,
            reply_subject=decision.reply_subject,
            reply_body=decision.reply_body,
            in_reply_to=thread_refs.in_reply_to if thread_refs else None,
            references=thread_refs.references if thread_refs else None,
            round_number=round_number,
            status="pending",
        )
        db.add(offer)
        db.flush()
        logger.info(
            "Offer draft %s for deal %s: %s x%d = %.2f (round %d)",
            offer.id, deal.id, draft.product_name, draft.quantity, draft.total_amount, round_number,
        )
        return offer

    # ── Resolution ──

    async def approve(self, offer_id: str, edits: Optional[OfferEdits] = None, task_id: Optional[str] = None) -> PendingOffer:
        edits = edits or OfferEdits()
        if offer_id in self._approving:
            raise OfferConflictError(f"Offer {offer_id} is already being approved")
        self._approving.add(offer_id)
        try:
            return await self._approve(offer_id, edits, task_id)
        finally:
            self._approving.discard(offer_id)

    async def _approve(self, offer_id: str, edits: OfferEdits, task_id: Optional[str]) -> PendingOffer:
        db = self.session_factory()
        try:
            offer = db.query(PendingOffer).filter(PendingOffer.id == offer_id).first()
            if not offer:
                raise EntityNotFoundError("PendingOffer", offer_id)
            if offer.status != "pending":
                raise OfferConflictError(f"Offer {offer_id} is already {offer.status}")
            deal = db.query(Deal).filter(Deal.id == offer.deal_id).one()
            if not deal_state.can_transition(deal.status, deal_state.OFFER_SENT):
                raise InvalidTransitionError(deal.status, deal_state.OFFER_SENT)
            lead = db.query(Lead).filter(Lead.id == deal.lead_id).one()
            company = db.query(Company).filter(Company.id == deal.company_id).one()

            product_name = edits.product_name or offer.offer_product_name
            pricing = deal_state.compute_pricing(
                edits.quantity if edits.quantity is not None else offer.offer_quantity,
                edits.unit_price if edits.unit_price is not None else offer.offer_unit_price,
                edits.tax_rate if edits.tax_rate is not None else offer.offer_tax_rate,
            )
            summary = edits.summary if edits.summary is not None else offer.offer_summary
            subject = edits.reply_subject or offer.reply_subject
            body = edits.reply_body or offer.reply_body
            thread_refs = ThreadRefs(in_reply_to=offer.in_reply_to, references=offer.references)
            company_id, deal_id, lead_id = deal.company_id, deal.id, deal.lead_id
            to, to_name = lead.contact_email, lead.contact_name

            document = await asyncio.to_thread(render_offer, company, lead, product_name, pricing, summary)
        finally:
            db.close()

        if task_id is None:
            task_id = self.task_queue.create_and_track(TaskCreate(
                company_id=company_id,
                source_role="sales",
                target_role="email",
                task_type="offer_email",
                title=f"Send offer to {to_name}",
                input_data={"pending_offer_id": offer_id, "edits": edits.model_dump(exclude_none=True)},
                deal_id=deal_id,
                lead_id=lead_id,
                priority=2,
            ))

        if not to:
            self.task_queue.fail(task_id, "Lead has no contact email")
            raise DeliveryError(f"Lead {lead_id} has no contact email")

        result = await self.mailer.send(
            company_id=company_id,
            email_type="offer",
            to=to,
            to_name=to_name,
            subject=subject,
            body=body,
            deal_id=deal_id,
            lead_id=lead_id,
            thread_refs=thread_refs,
            attachments=[Attachment(filename=f"offer-{deal_id[:8]}.docx", content=document)],
        )
        if not result.sent:
            self.task_queue.fail(task_id, f"Offer delivery failed: {result.error}")
            raise DeliveryError(result.error or "Offer delivery failed")

        db = self.session_factory()
        try:
            offer = db.query(PendingOffer).filter(PendingOffer.id == offer_id).one()
            deal = db.query(Deal).filter(Deal.id == deal_id).one()

            deal_state.apply_pricing(deal, pricing, product_name)
            deal_state.transition(deal, deal_state.OFFER_SENT)

            offer.offer_product_name = product_name
            offer.offer_quantity = pricing.quantity
            offer.offer_unit_price = pricing.unit_price
            offer.offer_tax_rate = pricing.tax_rate
            offer.offer_subtotal = pricing.subtotal
            offer.offer_tax_amount = pricing.tax_amount
            offer.offer_total_amount = pricing.total_amount
            offer.offer_summary = summary
            offer.reply_subject = subject
            offer.reply_body = body
            offer.status = "approved"
            offer.resolved_at = utcnow()

            record_audit(
                db, "human", "offer_approved",
                company_id=company_id, entity_type="deal", entity_id=deal_id,
                details={"pending_offer_id": offer_id, "total_amount": pricing.total_amount},
            )
            db.commit()
            db.refresh(offer)
        finally:
            db.close()

        self.task_queue.log(task_id, TaskLogEntry(
            type="agent_completed", role="email",
            message=f"Offer sent to {to} ({pricing.total_amount:.2f})",
        ))
        self.task_queue.complete(task_id, {"message_id": result.message_id, **pricing.model_dump()})

        logger.info("Offer %s approved and sent: deal %s total=%.2f", offer_id, deal_id, pricing.total_amount)
        await emit_event("offer_sent", company_id, {"deal_id": deal_id, "pending_offer_id": offer_id,
                                                    "total_amount": pricing.total_amount})
        return offer

    async def reject(self, offer_id: str) -> PendingOffer:
        if offer_id in self._approving:
            raise OfferConflictError(f"Offer {offer_id} is being approved")

        db = self.session_factory()
        try:
            offer = db.query(PendingOffer).filter(PendingOffer.id == offer_id).first()
            if not offer:
                raise EntityNotFoundError("PendingOffer", offer_id)
            if offer.status != "pending":
                raise OfferConflictError(f"Offer {offer_id} is already {offer.status}")
            deal = db.query(Deal).filter(Deal.id == offer.deal_id).one()

            deal_state.transition(deal, deal_state.IN_PIPELINE)
            offer.status = "rejected"
            offer.resolved_at = utcnow()
            record_audit(
                db, "human", "offer_rejected",
                company_id=deal.company_id, entity_type="deal", entity_id=deal.id,
                details={"pending_offer_id": offer_id},
            )
            db.commit()
            db.refresh(offer)
            company_id, deal_id = deal.company_id, deal.id
        finally:
            db.close()

        logger.info("Offer %s rejected, deal %s back in pipeline", offer_id, deal_id)
        await emit_event("offer_rejected", company_id, {"deal_id": deal_id, "pending_offer_id": offer_id})
        return offer

    # ── Deal-keyed surface ──

    def pending_for_deal(self, deal_id: str) -> Optional[PendingOffer]:
        db = self.session_factory()
        try:
            return (
                db.query(PendingOffer)
                .filter(PendingOffer.deal_id == deal_id, PendingOffer.status == "pending")
                .first()
            )
        finally:
            db.close()

    def _require_pending(self, deal_id: str) -> PendingOffer:
        offer = self.pending_for_deal(deal_id)
        if not offer:
            raise EntityNotFoundError("Pending offer for deal", deal_id)
        return offer

    async def approve_for_deal(self, deal_id: str, edits: Optional[OfferEdits] = None) -> PendingOffer:
        return await self.approve(self._require_pending(deal_id).id, edits)

    async def reject_for_deal(self, deal_id: str) -> PendingOffer:
        return await self.reject(self._require_pending(deal_id).id)

    def list_pending(self, company_id: Optional[str] = None) -> List[PendingOffer]:
        db = self.session_factory()
        try:
            query = db.query(PendingOffer).filter(PendingOffer.status == "pending")
            if company_id:
                query = query.filter(PendingOffer.company_id == company_id)
            return query.order_by(PendingOffer.created_at.asc()).all()
        finally:
            db.close()
