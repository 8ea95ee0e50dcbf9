import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.agents.legal import review_deal
from app.agents.negotiation import run_negotiation
from app.agents.outreach import EmailComposer, enrich_lead
from app.agents.research import ResearchRunner
from app.database import SessionLocal
from app.errors import AgentFlowError, DeliveryError, EntityNotFoundError
from app.models.company import Company
from app.models.deal import Deal
from app.models.email import EmailMessage
from app.models.invoice import Invoice
from app.models.lead import Lead
from app.models.task import Task
from app.schemas.agent import WorkflowResult
from app.schemas.negotiation import (
    AcceptedDecision,
    DeclinedDecision,
    DiscoveryDecision,
    EngagedDecision,
    NegotiationInput,
    PricingDecision,
)
from app.schemas.offer import OfferEdits
from app.schemas.task import TaskCreate, TaskLogEntry
from app.services import deal_state
from app.services.audit import record_audit
from app.services.documents import render_invoice
from app.services.invoicing import InvoiceService
from app.services.mail_transport import Attachment, InboundMessage, Mailer, ThreadRefs, build_transport, thread_refs_for
from app.services.offers import OfferService
from app.services.settings_store import SettingsStore
from app.services.task_queue import TERMINAL_STATUSES, TaskQueue
from app.websocket.manager import emit_event

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[Dict[str, Any]]]


class WorkflowEngine:
    """Drives a lead through outreach, negotiation and closing.

    Every unit of cross-agent work is a Task; ``run_task`` executes one by
    its target role, which is also how the lifecycle poller retries stale
    work.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        task_queue: Optional[TaskQueue] = None,
        mailer: Optional[Mailer] = None,
        composer: Optional[EmailComposer] = None,
        llm: Optional[Callable] = None,
        settings_store: Optional[SettingsStore] = None,
        invoices: Optional[InvoiceService] = None,
    ):
        self.session_factory = session_factory
        self.llm = llm
        self.task_queue = task_queue or TaskQueue(session_factory)
        self.mailer = mailer or Mailer(build_transport(), session_factory)
        self.composer = composer or EmailComposer(llm)
        self.settings_store = settings_store or SettingsStore(session_factory)
        self.invoices = invoices or InvoiceService(session_factory)
        self.offers = OfferService(self.task_queue, self.mailer, session_factory)
        self.research = ResearchRunner(session_factory, llm)
        # Deals with a reply being processed right now (advisory, in-process only)
        self._in_flight: Set[str] = set()
        self.handlers: Dict[str, TaskHandler] = {
            "marketing": self._handle_enrichment,
            "sales": self._handle_create_deal,
            "legal": self._handle_legal_review,
            "accounting": self._handle_issue_invoice,
            "email": self._handle_email,
        }

    # ── Task execution ──

    async def run_task(self, task_id: str) -> Dict[str, Any]:
        """Execute a task with the handler for its target role.

        Claims the task if it is still pending. The task ends completed with
        the handler's output, or failed with the error, which is re-raised.
        """
        task = self.task_queue.get_task(task_id)
        if not task:
            raise EntityNotFoundError("Task", task_id)
        if task.status in TERMINAL_STATUSES:
            logger.info("Task %s is already %s, not running it again", task_id, task.status)
            return task.output_data or {}

        handler = self.handlers.get(task.target_role)
        if handler is None:
            self.task_queue.fail(task_id, f"No handler for role '{task.target_role}'")
            raise AgentFlowError(f"No handler for role '{task.target_role}'")

        if task.status == "pending":
            self.task_queue.start_processing(task_id)
        self.task_queue.log(task_id, TaskLogEntry(
            type="agent_started", role=task.target_role, message=f"{task.target_role} agent started: {task.title}",
        ))

        try:
            output = await handler(task)
        except Exception as e:
            self.task_queue.log(task_id, TaskLogEntry(type="agent_failed", role=task.target_role, message=str(e)))
            self.task_queue.fail(task_id, str(e))
            await emit_event("task_failed", task.company_id, {"task_id": task_id, "error": str(e)})
            raise

        self.task_queue.log(task_id, TaskLogEntry(
            type="agent_completed", role=task.target_role, message=f"{task.title} done",
        ))
        self.task_queue.complete(task_id, output)
        await emit_event("task_completed", task.company_id, {"task_id": task_id, "target_role": task.target_role})
        return output

    def _load_context(self, db: Session, deal_id: str):
        deal = db.query(Deal).filter(Deal.id == deal_id).first()
        if not deal:
            raise EntityNotFoundError("Deal", deal_id)
        lead = db.query(Lead).filter(Lead.id == deal.lead_id).first()
        if not lead:
            raise EntityNotFoundError("Lead", deal.lead_id)
        company = db.query(Company).filter(Company.id == deal.company_id).first()
        if not company:
            raise EntityNotFoundError("Company", deal.company_id)
        return deal, lead, company

    async def _handle_enrichment(self, task: Task) -> Dict[str, Any]:
        lead_id = task.input_data["lead_id"]
        db = self.session_factory()
        try:
            lead = db.query(Lead).filter(Lead.id == lead_id).first()
            if not lead:
                raise EntityNotFoundError("Lead", lead_id)
            company = db.query(Company).filter(Company.id == lead.company_id).one()
            enrichment = await asyncio.to_thread(enrich_lead, lead, company, self.llm)

            lead.industry = enrichment.industry or lead.industry
            lead.company_size = enrichment.company_size or lead.company_size
            lead.lead_score = enrichment.lead_score
            lead.product_interest = lead.product_interest or enrichment.product_interest
            lead.status = "qualified"
            db.commit()
        finally:
            db.close()

        self.task_queue.log(task.id, TaskLogEntry(
            type="agent_reasoning", role="marketing",
            message=f"Lead scored {enrichment.lead_score}", reasoning=enrichment.reasoning,
        ))
        return enrichment.model_dump()

    async def _handle_create_deal(self, task: Task) -> Dict[str, Any]:
        """Open a deal for the lead and queue the cold outreach email."""
        lead_id = task.input_data["lead_id"]
        pipeline = self.settings_store.load()

        db = self.session_factory()
        try:
            lead = db.query(Lead).filter(Lead.id == lead_id).first()
            if not lead:
                raise EntityNotFoundError("Lead", lead_id)
            company = db.query(Company).filter(Company.id == lead.company_id).one()

            # Compose first: nothing is written if the reasoning service fails
            email = await asyncio.to_thread(self.composer.compose, "cold_outreach", company, lead)

            deal = Deal(
                company_id=lead.company_id,
                lead_id=lead.id,
                status=deal_state.CONTACTED,
                product_name=lead.product_interest,
                tax_rate=pipeline.default_tax_rate,
                sales_notes=task.input_data.get("recommended_approach"),
            )
            db.add(deal)
            db.flush()
            lead.status = "contacted"
            record_audit(db, "sales", "deal_created", company_id=lead.company_id,
                         entity_type="deal", entity_id=deal.id, details={"lead_id": lead.id})
            db.commit()
            deal_id, company_id = deal.id, deal.company_id
            to, to_name = lead.contact_email, lead.contact_name
        finally:
            db.close()

        self.task_queue.create_task(TaskCreate(
            company_id=company_id,
            source_role="sales",
            target_role="email",
            task_type="cold_outreach",
            title=f"Cold outreach to {to_name}",
            input_data={
                "email_type": "cold_outreach",
                "to": to,
                "to_name": to_name,
                "subject": email.subject,
                "body": email.body,
            },
            deal_id=deal_id,
            lead_id=lead_id,
            priority=1,
        ))
        return {"deal_id": deal_id}

    async def _handle_legal_review(self, task: Task) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            deal, lead, company = self._load_context(db, task.input_data["deal_id"])
            review = await asyncio.to_thread(review_deal, deal, lead, company, self.llm)
            record_audit(db, "legal", "legal_review", company_id=deal.company_id, entity_type="deal",
                         entity_id=deal.id, details={"approval_status": review.approval_status,
                                                     "risk_level": review.risk_level})
            db.commit()
        finally:
            db.close()

        self.task_queue.log(task.id, TaskLogEntry(
            type="agent_reasoning", role="legal",
            message=f"Review: {review.approval_status} (risk {review.risk_level})", reasoning=review.reasoning,
        ))
        return review.model_dump()

    async def _handle_issue_invoice(self, task: Task) -> Dict[str, Any]:
        deal_id = task.input_data["deal_id"]
        invoice = self.invoices.issue(deal_id)

        db = self.session_factory()
        try:
            deal, lead, company = self._load_context(db, deal_id)
            already_queued = (
                db.query(Task.id)
                .filter(Task.deal_id == deal_id, Task.task_type == "invoice_email")
                .first()
            )
            email = None
            if not already_queued:
                email = await asyncio.to_thread(
                    self.composer.compose, "invoice", company, lead, deal,
                    {"invoice_number": invoice.invoice_number, "total_amount": invoice.total_amount},
                )
            to, to_name = lead.contact_email, lead.contact_name
        finally:
            db.close()

        if email is not None:
            self.task_queue.create_task(TaskCreate(
                company_id=invoice.company_id,
                source_role="accounting",
                target_role="email",
                task_type="invoice_email",
                title=f"Send invoice {invoice.invoice_number}",
                input_data={
                    "email_type": "invoice",
                    "to": to,
                    "to_name": to_name,
                    "subject": email.subject,
                    "body": email.body,
                    "invoice_id": invoice.id,
                },
                deal_id=deal_id,
                lead_id=task.lead_id,
                priority=1,
            ))
        return {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number,
                "total_amount": invoice.total_amount}

    async def _handle_email(self, task: Task) -> Dict[str, Any]:
        data = task.input_data or {}

        if task.task_type == "offer_email":
            offer = await self.offers.approve(
                data["pending_offer_id"], OfferEdits(**data.get("edits", {})), task_id=task.id,
            )
            return {"pending_offer_id": offer.id, "total_amount": offer.offer_total_amount}

        if not data.get("to"):
            raise DeliveryError(f"Task {task.id} has no recipient")

        attachments = []
        if data.get("invoice_id"):
            attachments.append(await self._invoice_attachment(data["invoice_id"]))

        thread_refs = ThreadRefs(**data["thread_refs"]) if data.get("thread_refs") else None
        result = await self.mailer.send(
            company_id=task.company_id,
            email_type=data.get("email_type", task.task_type),
            to=data["to"],
            to_name=data.get("to_name"),
            subject=data["subject"],
            body=data["body"],
            deal_id=task.deal_id,
            lead_id=task.lead_id,
            thread_refs=thread_refs,
            attachments=attachments or None,
        )
        if not result.sent:
            raise DeliveryError(result.error or "delivery failed")
        return {"message_id": result.message_id, "logged": result.logged}

    async def _invoice_attachment(self, invoice_id: str) -> Attachment:
        db = self.session_factory()
        try:
            invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
            if not invoice:
                raise EntityNotFoundError("Invoice", invoice_id)
            deal = db.query(Deal).filter(Deal.id == invoice.deal_id).one()
            company = db.query(Company).filter(Company.id == invoice.company_id).one()
            content = await asyncio.to_thread(render_invoice, company, invoice, deal.product_name, deal.quantity)
            filename = f"invoice-{invoice.invoice_number.replace('/', '-')}.docx"
        finally:
            db.close()
        return Attachment(filename=filename, content=content)

    # ── Phase 1: lead -> enrichment -> cold outreach ──

    async def start_workflow(self, lead_id: str) -> WorkflowResult:
        start = time.perf_counter()
        db = self.session_factory()
        try:
            lead = db.query(Lead).filter(Lead.id == lead_id).first()
            if not lead:
                raise EntityNotFoundError("Lead", lead_id)
            company_id, lead_name = lead.company_id, lead.company_name
            record_audit(db, "workflow", "workflow_started", company_id=company_id,
                         entity_type="lead", entity_id=lead_id)
            db.commit()
        finally:
            db.close()

        logger.info("start_workflow: lead %s (%s)", lead_id, lead_name)

        try:
            enrich_task = self.task_queue.create_and_track(TaskCreate(
                company_id=company_id, source_role="system", target_role="marketing",
                task_type="enrich_lead", title=f"Enrich lead: {lead_name}",
                input_data={"lead_id": lead_id}, lead_id=lead_id,
            ))
            enrichment = await self.run_task(enrich_task)

            deal_task = self.task_queue.create_and_track(TaskCreate(
                company_id=company_id, source_role="marketing", target_role="sales",
                task_type="create_deal", title=f"Open deal: {lead_name}",
                input_data={"lead_id": lead_id, "recommended_approach": enrichment.get("recommended_approach")},
                lead_id=lead_id,
            ))
            deal_id = (await self.run_task(deal_task))["deal_id"]
        except Exception as e:
            logger.error("start_workflow: lead %s failed: %s", lead_id, e)
            self._audit("workflow", "workflow_failed", company_id, "lead", lead_id, {"error": str(e)})
            await emit_event("workflow_failed", company_id, {"lead_id": lead_id, "error": str(e)})
            raise

        sent, failed = 0, 0
        for task in self.task_queue.get_pending("email", company_id):
            if task.deal_id != deal_id:
                continue
            try:
                await self.run_task(task.id)
                sent += 1
            except Exception as e:
                logger.error("start_workflow: email task %s failed: %s", task.id, e)
                failed += 1

        duration = time.perf_counter() - start
        if sent == 0:
            message = f"Cold outreach failed for deal {deal_id}"
            self._audit("workflow", "outreach_failed", company_id, "deal", deal_id, {"lead_id": lead_id})
            await emit_event("workflow_failed", company_id, {"deal_id": deal_id, "lead_id": lead_id, "message": message})
            return WorkflowResult(status="outreach_failed", message=message, deal_id=deal_id, lead_id=lead_id,
                                  data={"failed_emails": failed})

        message = f"Cold outreach sent in {duration:.1f}s, awaiting reply"
        self._audit("workflow", "cold_outreach_sent", company_id, "deal", deal_id, {"lead_id": lead_id})
        await emit_event("deal_contacted", company_id, {"deal_id": deal_id, "lead_id": lead_id})
        logger.info("start_workflow: deal %s contacted (%s)", deal_id, message)
        return WorkflowResult(status="lead_contacted", message=message, deal_id=deal_id, lead_id=lead_id,
                              data={"lead_score": enrichment.get("lead_score"), "failed_emails": failed})

    # ── Phase 2: inbound reply -> negotiation -> branch ──

    async def process_reply(self, deal_id: str) -> WorkflowResult:
        if deal_id in self._in_flight:
            return WorkflowResult(status="skipped", deal_id=deal_id,
                                  message="A reply for this deal is already being processed")
        self._in_flight.add(deal_id)
        try:
            return await self._process_reply(deal_id)
        finally:
            self._in_flight.discard(deal_id)

    async def _process_reply(self, deal_id: str) -> WorkflowResult:
        pipeline = self.settings_store.load()

        db = self.session_factory()
        try:
            deal, lead, company = self._load_context(db, deal_id)
            status = deal_state.normalize_status(deal.status)
            if status not in deal_state.REPLYABLE_STATUSES:
                return WorkflowResult(status="skipped", deal_id=deal_id,
                                      message=f"Deal is '{deal.status}', not awaiting a reply")
            if self.offers.pending_for_deal(deal_id):
                return WorkflowResult(status="awaiting_approval", deal_id=deal_id,
                                      message="An offer draft is waiting for approval")

            context = {"deal_id": deal_id, "contact_email": lead.contact_email, "since": deal.created_at}
            company_id, lead_id = deal.company_id, deal.lead_id
        finally:
            db.close()

        inbound = await self.mailer.fetch_reply(context)
        if inbound is None:
            return WorkflowResult(status="waiting", deal_id=deal_id, message="No customer reply found yet")
        if not self._store_inbound(inbound, company_id, deal_id, lead_id):
            return WorkflowResult(status="waiting", deal_id=deal_id, message="Reply already processed")

        db = self.session_factory()
        try:
            deal, lead, company = self._load_context(db, deal_id)
            round_number = deal.negotiation_round + 1
            inp = NegotiationInput(
                deal_id=deal.id,
                deal_status=deal.status,
                product_name=deal.product_name,
                quantity=deal.quantity,
                subtotal=deal.subtotal,
                total_amount=deal.total_amount,
                lead_name=lead.contact_name,
                lead_company=lead.company_name,
                lead_profile=lead.lead_profile or {},
                inbound_subject=inbound.subject,
                inbound_body=inbound.body,
                round_number=round_number,
                max_rounds=pipeline.max_offer_rounds,
                min_replies_before_offer=pipeline.min_replies_before_offer,
                default_tax_rate=pipeline.default_tax_rate,
                company_context=company.context_block(),
                conversation=self._conversation(db, deal_id, exclude_message_id=inbound.message_id),
            )
        finally:
            db.close()

        task_id = self.task_queue.create_and_track(TaskCreate(
            company_id=company_id, source_role="email", target_role="sales",
            task_type="analyze_reply", title=f"Analyze reply (round {round_number})",
            input_data={"deal_id": deal_id, "message_id": inbound.message_id, "round": round_number},
            deal_id=deal_id, lead_id=lead_id, priority=1,
        ))

        try:
            decision = await asyncio.to_thread(run_negotiation, inp, self.llm, task_id)
            self.task_queue.log(task_id, TaskLogEntry(
                type="agent_reasoning", role="sales",
                message=f"Action: {decision.action}" + (
                    f" (overridden from {decision.overridden_from})" if decision.overridden_from else ""),
                reasoning=decision.reasoning,
            ))
            result = self._apply_decision(deal_id, decision, inbound, round_number)
        except Exception as e:
            self.task_queue.fail(task_id, str(e))
            raise
        self.task_queue.complete(task_id, {
            "action": decision.action,
            "round": round_number,
            "overridden_from": decision.overridden_from,
            "pending_offer_id": result.pending_offer_id,
        })

        if not isinstance(decision, PricingDecision):
            email_type = "confirmation" if isinstance(decision, AcceptedDecision) else "follow_up"
            await self._send_reply(company_id, deal_id, lead_id, decision, inbound, email_type)

        if isinstance(decision, AcceptedDecision):
            result.data.update(await self.complete_workflow(deal_id))

        await emit_event("reply_processed", company_id, {
            "deal_id": deal_id, "action": decision.action, "round": round_number, "status": result.status,
        })
        return result

    def _store_inbound(self, inbound: InboundMessage, company_id: str, deal_id: str, lead_id: str) -> bool:
        """Record the inbound message; False if its message id was already seen."""
        db = self.session_factory()
        try:
            if db.query(EmailMessage.id).filter(EmailMessage.message_id == inbound.message_id).first():
                return False
            db.add(EmailMessage(
                company_id=company_id,
                deal_id=deal_id,
                lead_id=lead_id,
                direction="inbound",
                email_type="reply",
                counterpart_email=inbound.from_email,
                counterpart_name=inbound.from_name,
                subject=inbound.subject,
                body=inbound.body,
                message_id=inbound.message_id,
                in_reply_to=inbound.in_reply_to,
                references=inbound.references,
                status="received",
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True
        finally:
            db.close()

    def _conversation(self, db: Session, deal_id: str, exclude_message_id: str):
        emails = (
            db.query(EmailMessage)
            .filter(EmailMessage.deal_id == deal_id, EmailMessage.status != "failed")
            .order_by(EmailMessage.created_at.asc())
            .all()
        )
        return [
            f"[{'THEM' if e.direction == 'inbound' else 'US'}] {e.subject}\n{e.body[:800]}"
            for e in emails
            if e.message_id != exclude_message_id
        ]

    def _apply_decision(self, deal_id: str, decision, inbound: InboundMessage, round_number: int) -> WorkflowResult:
        db = self.session_factory()
        try:
            deal, lead, _ = self._load_context(db, deal_id)
            if decision.updated_lead_profile:
                lead.lead_profile = {**(lead.lead_profile or {}), **decision.updated_lead_profile}
            deal.negotiation_round = round_number
            current = deal_state.normalize_status(deal.status)
            result = WorkflowResult(status="in_pipeline", deal_id=deal_id, lead_id=deal.lead_id,
                                    action=decision.action, round=round_number, message="")

            if isinstance(decision, DiscoveryDecision):
                result.message = "Discovery: learning the lead's needs"

            elif isinstance(decision, EngagedDecision):
                if current == deal_state.CONTACTED:
                    deal_state.transition(deal, deal_state.IN_PIPELINE)
                result.message = "Lead engaged: conversation ongoing"

            elif isinstance(decision, PricingDecision):
                if current == deal_state.CONTACTED:
                    deal_state.transition(deal, deal_state.IN_PIPELINE)
                offer = self.offers.create_draft(db, deal, decision, thread_refs_for(inbound), round_number)
                result.status = "offer_pending_approval"
                result.pending_offer_id = offer.id
                result.data = {"offer_total": decision.draft.total_amount}
                result.message = "Offer draft ready, awaiting approval"

            elif isinstance(decision, AcceptedDecision):
                deal_state.transition(deal, deal_state.CLOSED_WON)
                lead.status = "converted"
                result.status = "closed_won"
                result.message = "Offer accepted: deal closed won"

            elif isinstance(decision, DeclinedDecision):
                deal_state.transition(deal, deal_state.CLOSED_LOST)
                deal.sales_notes = f"CLOSED LOST: {decision.reason}"
                result.status = "closed_lost"
                result.message = f"Deal lost: {decision.reason}"
                record_audit(db, "sales", "deal_closed_lost", company_id=deal.company_id, entity_type="deal",
                             entity_id=deal.id, details={"round": round_number, "reason": decision.reason,
                                                         "sentiment": decision.customer_sentiment})

            db.commit()
        finally:
            db.close()

        logger.info("Deal %s round %d: %s -> %s", deal_id, round_number, decision.action, result.status)
        return result

    async def _send_reply(self, company_id, deal_id, lead_id, decision, inbound: InboundMessage, email_type: str):
        """Deliver the negotiation reply; a delivery failure is logged, not raised."""
        refs = thread_refs_for(inbound)
        task_id = self.task_queue.create_task(TaskCreate(
            company_id=company_id, source_role="sales", target_role="email",
            task_type="negotiation_reply", title=f"Reply to {inbound.from_email}",
            input_data={
                "email_type": email_type,
                "to": inbound.from_email,
                "to_name": inbound.from_name,
                "subject": decision.reply_subject,
                "body": decision.reply_body,
                "thread_refs": refs.model_dump() if refs else None,
            },
            deal_id=deal_id, lead_id=lead_id, priority=1,
        ))
        try:
            await self.run_task(task_id)
        except Exception as e:
            logger.error("Reply for deal %s not delivered: %s", deal_id, e)

    # ── Phase 3: won deal -> legal -> invoice -> invoice email ──

    async def complete_workflow(self, deal_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            deal = db.query(Deal).filter(Deal.id == deal_id).first()
            if not deal:
                raise EntityNotFoundError("Deal", deal_id)
            company_id, lead_id = deal.company_id, deal.lead_id
        finally:
            db.close()

        outcome: Dict[str, Any] = {"pipeline_completed": True}

        legal_task = self.task_queue.create_and_track(TaskCreate(
            company_id=company_id, source_role="sales", target_role="legal", task_type="legal_review",
            title="Legal review", input_data={"deal_id": deal_id}, deal_id=deal_id, lead_id=lead_id,
        ))
        try:
            review = await self.run_task(legal_task)
            outcome["legal_status"] = review.get("approval_status")
        except Exception as e:
            logger.error("Legal review failed for deal %s: %s", deal_id, e)

        invoice_task = self.task_queue.create_and_track(TaskCreate(
            company_id=company_id, source_role="legal", target_role="accounting", task_type="issue_invoice",
            title="Issue invoice", input_data={"deal_id": deal_id}, deal_id=deal_id, lead_id=lead_id,
        ))
        try:
            invoice = await self.run_task(invoice_task)
            outcome["invoice_number"] = invoice.get("invoice_number")
        except Exception as e:
            logger.error("Invoice generation failed for deal %s: %s", deal_id, e)

        for task in self.task_queue.get_pending("email", company_id):
            if task.deal_id != deal_id or task.task_type != "invoice_email":
                continue
            try:
                await self.run_task(task.id)
                outcome["invoice_emailed"] = True
            except Exception as e:
                logger.error("Invoice email failed for deal %s: %s", deal_id, e)

        self._audit("workflow", "workflow_completed", company_id, "deal", deal_id, outcome)
        await emit_event("workflow_completed", company_id, {"deal_id": deal_id, **outcome})
        return outcome

    # ── Lifecycle emails (used by the poller) ──

    async def send_lifecycle_email(self, deal_id: str, kind: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """Compose and deliver a follow-up/satisfaction email. True when it was sent."""
        db = self.session_factory()
        try:
            deal, lead, company = self._load_context(db, deal_id)
            if not lead.contact_email:
                logger.warning("Deal %s: lead has no contact email, skipping %s", deal_id, kind)
                return False
            email = await asyncio.to_thread(self.composer.compose, kind, company, lead, deal, context)
            company_id, lead_id = deal.company_id, deal.lead_id
            to, to_name = lead.contact_email, lead.contact_name
        finally:
            db.close()

        task_id = self.task_queue.create_task(TaskCreate(
            company_id=company_id, source_role="system", target_role="email", task_type=kind,
            title=f"{kind.replace('_', ' ').capitalize()} to {to_name}",
            input_data={"email_type": kind, "to": to, "to_name": to_name,
                        "subject": email.subject, "body": email.body},
            deal_id=deal_id, lead_id=lead_id,
        ))
        try:
            await self.run_task(task_id)
        except Exception as e:
            logger.error("%s email for deal %s failed: %s", kind, deal_id, e)
            return False
        return True

    def _audit(self, actor, action, company_id, entity_type, entity_id, details=None):
        db = self.session_factory()
        try:
            record_audit(db, actor, action, company_id=company_id, entity_type=entity_type,
                         entity_id=entity_id, details=details)
            db.commit()
        finally:
            db.close()
