import asyncio

import pytest

from app.errors import DeliveryError, EntityNotFoundError, InvalidTransitionError, OfferConflictError
from app.models.deal import Deal
from app.models.pending_offer import PendingOffer
from app.models.task import Task
from app.schemas.offer import OfferEdits
from conftest import FailingTransport


def test_approve_with_edits_sends_offer(engine, transport, draft, load):
    deal_id, offer_id = draft()

    offer = asyncio.run(engine.offers.approve_for_deal(deal_id, OfferEdits(quantity=3)))

    assert offer.status == "approved"
    assert offer.resolved_at is not None
    deal = load(Deal, deal_id)
    assert deal.status == "offer_sent"
    assert (deal.quantity, deal.subtotal, deal.tax_amount, deal.total_amount) == (3, 300.0, 72.0, 372.0)

    assert len(transport.outbox) == 1
    sent = transport.outbox[0]
    assert sent["to"] == "dana@northwind.test"
    assert sent["attachments"][0].endswith(".docx")
    assert sent["thread_refs"].in_reply_to == "<m1@northwind.test>"


def test_approve_records_completed_email_task(engine, draft, session_factory):
    deal_id, offer_id = draft()
    asyncio.run(engine.offers.approve(offer_id))

    db = session_factory()
    try:
        task = db.query(Task).filter(Task.deal_id == deal_id, Task.task_type == "offer_email").one()
    finally:
        db.close()
    assert task.status == "completed"
    assert task.output_data["total_amount"] == 124.0


def test_delivery_failure_keeps_offer_pending(engine, draft, load, session_factory):
    engine.mailer.transport = FailingTransport()
    deal_id, offer_id = draft()

    with pytest.raises(DeliveryError):
        asyncio.run(engine.offers.approve(offer_id, OfferEdits(quantity=3)))

    assert load(PendingOffer, offer_id).status == "pending"
    deal = load(Deal, deal_id)
    assert deal.status == "in_pipeline"
    assert deal.total_amount == 0.0

    db = session_factory()
    try:
        task = db.query(Task).filter(Task.task_type == "offer_email").one()
    finally:
        db.close()
    assert task.status == "failed"


def test_approve_twice_conflicts(engine, draft):
    _, offer_id = draft()
    asyncio.run(engine.offers.approve(offer_id))
    with pytest.raises(OfferConflictError):
        asyncio.run(engine.offers.approve(offer_id))


def test_approve_rejected_for_closed_deal(engine, draft):
    _, offer_id = draft(status="closed_lost")
    with pytest.raises(InvalidTransitionError):
        asyncio.run(engine.offers.approve(offer_id))


def test_reject_returns_deal_to_pipeline(engine, draft, load, transport):
    deal_id, offer_id = draft(subtotal=50.0, total_amount=62.0)

    offer = asyncio.run(engine.offers.reject_for_deal(deal_id))

    assert offer.status == "rejected"
    deal = load(Deal, deal_id)
    assert deal.status == "in_pipeline"
    assert (deal.subtotal, deal.total_amount) == (50.0, 62.0)
    assert transport.outbox == []


def test_no_pending_offer_for_deal(engine, make_deal):
    deal_id = make_deal(status="in_pipeline")
    with pytest.raises(EntityNotFoundError):
        asyncio.run(engine.offers.approve_for_deal(deal_id))


def test_list_pending(engine, draft, company):
    _, first = draft()
    _, second = draft()
    asyncio.run(engine.offers.reject(first))

    assert [o.id for o in engine.offers.list_pending(company)] == [second]
    assert engine.offers.list_pending("another-company") == []
