import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.models.lead import Lead
from app.models.pending_offer import PendingOffer
from app.services.mail_transport import InboundMessage
from conftest import negotiation_reply
from main import app


@pytest.fixture
def client(engine, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.engine = engine
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_create_lead_and_trigger_workflow(client, company, transport):
    response = client.post("/api/leads", json={
        "company_id": company,
        "company_name": "Contoso Haulage",
        "contact_name": "Sam Lee",
        "contact_email": "sam@contoso.test",
    })
    assert response.status_code == 201
    lead_id = response.json()["id"]

    result = client.post(f"/api/workflows/trigger/{lead_id}").json()
    assert result["status"] == "lead_contacted"
    assert transport.outbox[0]["to"] == "sam@contoso.test"

    deals = client.get("/api/deals", params={"company_id": company, "status": "contacted"}).json()
    assert deals["total"] == 1
    assert client.get(f"/api/deals/{result['deal_id']}").json()["status"] == "contacted"

    tasks = client.get("/api/tasks", params={"deal_id": result["deal_id"]}).json()
    assert "cold_outreach" in {t["task_type"] for t in tasks}


def test_unknown_entities_are_404(client):
    assert client.post("/api/workflows/trigger/missing").status_code == 404
    assert client.get("/api/tasks/missing").status_code == 404
    assert client.get("/api/deals/missing").status_code == 404
    assert client.post("/api/offers/deal/missing/approve").status_code == 404


def test_offer_review_flow(client, engine, llm, transport, make_deal, lead, session_factory):
    db = session_factory()
    try:
        db.query(Lead).filter(Lead.id == lead).update({"lead_profile": {"knows_offering": True}}, synchronize_session=False)
        db.commit()
    finally:
        db.close()
    deal_id = make_deal(status="in_pipeline", negotiation_round=2, product_name="Fleet Tracker")
    transport.inbox["dana@northwind.test"] = InboundMessage(
        message_id="<m1@northwind.test>", from_email="dana@northwind.test", subject="Re: Fleet Tracker",
        body="Price for 3 please",
    )
    llm.negotiation.append(negotiation_reply("wants_offer", offer_quantity=1, offer_unit_price=100))

    checked = client.post(f"/api/workflows/check-reply/{deal_id}").json()
    assert checked["status"] == "offer_pending_approval"

    [pending] = client.get("/api/offers").json()
    assert pending["deal_id"] == deal_id

    approved = client.post(f"/api/offers/deal/{deal_id}/approve", json={"quantity": 3})
    assert approved.status_code == 200
    assert approved.json()["offer_total_amount"] == 372.0
    assert client.get(f"/api/deals/{deal_id}").json()["status"] == "offer_sent"

    # Nothing left to approve or reject
    assert client.post(f"/api/offers/deal/{deal_id}/reject").status_code == 404


def test_approving_for_closed_deal_conflicts(client, make_deal, company, lead, session_factory):
    deal_id = make_deal(status="closed_lost")
    db = session_factory()
    try:
        db.add(PendingOffer(
            company_id=company, deal_id=deal_id, lead_id=lead, action="counter",
            offer_product_name="Fleet Tracker", reply_subject="Re: offer", reply_body="Updated offer",
            round_number=4,
        ))
        db.commit()
    finally:
        db.close()

    assert client.post(f"/api/offers/deal/{deal_id}/approve").status_code == 409


def test_settings_roundtrip(client):
    assert client.get("/api/settings").json()["stale_lead_days"] == 7

    updated = client.put("/api/settings", json={"stale_lead_days": 10})
    assert updated.status_code == 200
    assert updated.json()["stale_lead_days"] == 10

    rejected = client.put("/api/settings", json={"max_followup_attempts": 99})
    assert rejected.status_code == 422
    assert client.get("/api/settings").json()["max_followup_attempts"] == 3

    assert client.put("/api/settings", json={"max_offer_rounds": 3}).status_code == 422
    assert client.get("/api/settings").json()["max_offer_rounds"] == 6
