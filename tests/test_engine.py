import asyncio

import pytest

from app.agents.negotiation import MAX_ROUNDS_REASON
from app.database import utcnow
from app.errors import AgentFlowError, EntityNotFoundError, LLMOutputError
from app.models.audit import AuditLog
from app.models.deal import Deal
from app.models.email import EmailMessage
from app.models.invoice import Invoice
from app.models.lead import Lead
from app.models.pending_offer import PendingOffer
from app.models.task import Task
from app.schemas.task import TaskCreate
from app.services.mail_transport import InboundMessage
from conftest import FailingTransport, negotiation_reply


def _reply(transport, message_id="<m1@northwind.test>", body="Sounds interesting, tell me more."):
    transport.inbox["dana@northwind.test"] = InboundMessage(
        message_id=message_id,
        from_email="dana@northwind.test",
        from_name="Dana Reyes",
        subject="Re: Fleet Tracker",
        body=body,
    )


def _tasks(session_factory, **filters):
    db = session_factory()
    try:
        return db.query(Task).filter_by(**filters).order_by(Task.created_at.asc()).all()
    finally:
        db.close()


def _set_profile(session_factory, lead_id, profile):
    db = session_factory()
    try:
        db.query(Lead).filter(Lead.id == lead_id).update({"lead_profile": profile}, synchronize_session=False)
        db.commit()
    finally:
        db.close()


# ── start_workflow ──

def test_start_workflow_contacts_lead(engine, transport, lead, load, session_factory):
    result = asyncio.run(engine.start_workflow(lead))

    assert result.status == "lead_contacted"
    deal = load(Deal, result.deal_id)
    assert deal.status == "contacted"
    assert deal.tax_rate == 0.24

    enriched = load(Lead, lead)
    assert enriched.status == "contacted"
    assert enriched.lead_score == "A"
    assert enriched.industry == "Logistics"

    assert [m["subject"] for m in transport.outbox] == ["Hello from Acme"]
    task_types = [(t.task_type, t.status) for t in _tasks(session_factory, deal_id=result.deal_id)]
    assert ("cold_outreach", "completed") in task_types


def test_start_workflow_reports_failed_outreach(engine, lead, session_factory):
    engine.mailer.transport = FailingTransport()

    result = asyncio.run(engine.start_workflow(lead))

    assert result.status == "outreach_failed"
    [email_task] = _tasks(session_factory, task_type="cold_outreach")
    assert email_task.status == "failed"
    assert "SMTP 421" in email_task.error_message


def test_start_workflow_unknown_lead(engine):
    with pytest.raises(EntityNotFoundError):
        asyncio.run(engine.start_workflow("missing"))


def test_start_workflow_enrichment_failure(engine, llm, lead, session_factory):
    llm.fail_on = "You are the marketing agent"

    with pytest.raises(RuntimeError):
        asyncio.run(engine.start_workflow(lead))

    [enrich] = _tasks(session_factory, task_type="enrich_lead")
    assert enrich.status == "failed"
    assert _tasks(session_factory, task_type="create_deal") == []


# ── process_reply ──

def test_no_reply_waits(engine, make_deal):
    deal_id = make_deal(status="contacted")
    result = asyncio.run(engine.process_reply(deal_id))
    assert result.status == "waiting"


def test_engaged_reply_moves_deal_into_pipeline(engine, llm, transport, make_deal, load):
    deal_id = make_deal(status="contacted")
    _reply(transport)
    llm.negotiation.append(negotiation_reply("engaged", updated_lead_profile={"knows_offering": True}))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.status == "in_pipeline"
    assert result.round == 1
    deal = load(Deal, deal_id)
    assert deal.status == "in_pipeline"
    assert deal.negotiation_round == 1
    assert load(Lead, deal.lead_id).lead_profile == {"knows_offering": True}

    [sent] = transport.outbox
    assert sent["body"] == "Reply for engaged"
    assert sent["thread_refs"].in_reply_to == "<m1@northwind.test>"


def test_same_reply_is_processed_once(engine, llm, transport, make_deal, load):
    deal_id = make_deal(status="contacted")
    _reply(transport)
    llm.negotiation.append(negotiation_reply("discovery"))

    asyncio.run(engine.process_reply(deal_id))
    again = asyncio.run(engine.process_reply(deal_id))

    assert again.status == "waiting"
    assert load(Deal, deal_id).negotiation_round == 1


def test_pricing_reply_drafts_offer_without_sending(engine, llm, transport, make_deal, lead, session_factory):
    _set_profile(session_factory, lead, {"knows_offering": True})
    deal_id = make_deal(status="in_pipeline", negotiation_round=2, product_name="Fleet Tracker")
    _reply(transport, body="What would 3 licences cost?")
    llm.negotiation.append(negotiation_reply("wants_offer", offer_quantity=3, offer_unit_price=100))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.status == "offer_pending_approval"
    assert result.round == 3
    offer = engine.offers.pending_for_deal(deal_id)
    assert offer.id == result.pending_offer_id
    assert offer.offer_total_amount == 372.0
    assert offer.in_reply_to == "<m1@northwind.test>"
    assert transport.outbox == []

    _reply(transport, message_id="<m2@northwind.test>")
    blocked = asyncio.run(engine.process_reply(deal_id))
    assert blocked.status == "awaiting_approval"


def test_early_pricing_request_is_answered_without_price(engine, llm, transport, make_deal, session_factory):
    deal_id = make_deal(status="contacted")
    _reply(transport, body="Just send me a price")
    llm.negotiation.append(negotiation_reply("wants_offer", offer_quantity=1, offer_unit_price=100))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.action == "engaged"
    db = session_factory()
    try:
        assert db.query(PendingOffer).count() == 0
    finally:
        db.close()
    assert len(transport.outbox) == 1


def test_accepted_reply_closes_and_invoices(engine, llm, transport, make_deal, load, session_factory):
    deal_id = make_deal(
        status="offer_sent", negotiation_round=3, product_name="Fleet Tracker", quantity=3,
        subtotal=300.0, tax_amount=72.0, total_amount=372.0,
    )
    _reply(transport, body="We accept, please proceed.")
    llm.negotiation.append(negotiation_reply("accepted"))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.status == "closed_won"
    assert result.data["legal_status"] == "approved"
    assert result.data["invoice_number"] == f"{utcnow().year}/001"
    assert result.data["invoice_emailed"] is True

    deal = load(Deal, deal_id)
    assert deal.status == "closed_won"
    assert deal.closed_at is not None
    assert load(Lead, deal.lead_id).status == "converted"

    db = session_factory()
    try:
        invoice = db.query(Invoice).filter(Invoice.deal_id == deal_id).one()
        actions = {a.action for a in db.query(AuditLog).all()}
    finally:
        db.close()
    assert invoice.total_amount == 372.0
    assert {"legal_review", "invoice_issued", "workflow_completed"} <= actions

    subjects = [(m["subject"], m["attachments"]) for m in transport.outbox]
    assert subjects[0] == ("Re: Fleet Tracker", [])
    assert subjects[1][1][0].startswith("invoice-")


def test_declined_reply_closes_lost(engine, llm, transport, make_deal, load):
    deal_id = make_deal(status="in_pipeline", negotiation_round=1)
    _reply(transport, body="Not for us, thanks.")
    llm.negotiation.append(negotiation_reply("declined", failure_reason="no budget this year"))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.status == "closed_lost"
    deal = load(Deal, deal_id)
    assert deal.status == "closed_lost"
    assert deal.sales_notes == "CLOSED LOST: no budget this year"


def test_round_budget_exhausted(engine, llm, transport, make_deal, load):
    deal_id = make_deal(status="offer_sent", negotiation_round=5)
    _reply(transport, body="Could you do a little better on price?")
    llm.negotiation.append(negotiation_reply("counter", offer_unit_price=90))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.status == "closed_lost"
    assert result.round == 6
    deal = load(Deal, deal_id)
    assert deal.sales_notes == f"CLOSED LOST: {MAX_ROUNDS_REASON}"
    assert deal.negotiation_round == 6
    assert transport.outbox[0]["body"].startswith("Dear Dana Reyes")


def test_reply_delivery_failure_keeps_decision(engine, llm, transport, make_deal, load, session_factory):
    deal_id = make_deal(status="contacted")
    _reply(transport)
    failing = FailingTransport()
    failing.inbox = transport.inbox
    engine.mailer.transport = failing
    llm.negotiation.append(negotiation_reply("engaged"))

    result = asyncio.run(engine.process_reply(deal_id))

    assert result.status == "in_pipeline"
    assert load(Deal, deal_id).status == "in_pipeline"
    [reply_task] = _tasks(session_factory, task_type="negotiation_reply")
    assert reply_task.status == "failed"


def test_malformed_analysis_fails_task(engine, llm, transport, make_deal, load, session_factory):
    deal_id = make_deal(status="contacted")
    _reply(transport)
    llm.negotiation.extend(["no idea", "still no idea"])

    with pytest.raises(LLMOutputError):
        asyncio.run(engine.process_reply(deal_id))

    [task] = _tasks(session_factory, task_type="analyze_reply")
    assert task.status == "failed"
    deal = load(Deal, deal_id)
    assert deal.negotiation_round == 0
    assert deal.status == "contacted"


def test_closed_deal_is_skipped(engine, transport, make_deal):
    deal_id = make_deal(status="completed")
    _reply(transport)
    assert asyncio.run(engine.process_reply(deal_id)).status == "skipped"


def test_reply_in_flight_is_skipped(engine, make_deal):
    deal_id = make_deal(status="contacted")
    engine._in_flight.add(deal_id)
    assert asyncio.run(engine.process_reply(deal_id)).status == "skipped"


def test_inbound_message_stored(engine, llm, transport, make_deal, session_factory):
    deal_id = make_deal(status="contacted")
    _reply(transport)
    llm.negotiation.append(negotiation_reply("discovery"))
    asyncio.run(engine.process_reply(deal_id))

    db = session_factory()
    try:
        inbound = db.query(EmailMessage).filter(EmailMessage.direction == "inbound").one()
    finally:
        db.close()
    assert inbound.message_id == "<m1@northwind.test>"
    assert inbound.deal_id == deal_id


# ── run_task ──

def test_run_task_without_handler_fails(engine, task_queue, company):
    task_id = task_queue.create_task(TaskCreate(
        company_id=company, source_role="sales", target_role="system", task_type="noop", title="Nothing",
    ))
    with pytest.raises(AgentFlowError):
        asyncio.run(engine.run_task(task_id))
    assert task_queue.get_task(task_id).status == "failed"


def test_run_task_does_not_repeat_finished_work(engine, task_queue, company, transport):
    task_id = task_queue.create_task(TaskCreate(
        company_id=company, source_role="system", target_role="email", task_type="follow_up", title="Ping",
        input_data={"to": "dana@northwind.test", "subject": "Hi", "body": "Hello"},
    ))
    first = asyncio.run(engine.run_task(task_id))
    second = asyncio.run(engine.run_task(task_id))

    assert first == second
    assert len(transport.outbox) == 1


def test_run_task_unknown(engine):
    with pytest.raises(EntityNotFoundError):
        asyncio.run(engine.run_task("missing"))
