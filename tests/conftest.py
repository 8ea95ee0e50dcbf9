import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.orchestrator import WorkflowEngine
from app.database import init_db, utcnow
from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.models.pending_offer import PendingOffer
from app.services.invoicing import InvoiceService
from app.services.mail_transport import LogOnlyTransport, Mailer, SendResult
from app.services.settings_store import SettingsStore
from app.services.task_logger import TaskLogBuffer
from app.services.task_queue import TaskQueue


ENRICHMENT = {
    "reasoning": ["B2B buyer", "clear need"],
    "industry": "Logistics",
    "company_size": "50-200 employees",
    "lead_score": "A",
    "product_interest": "Fleet Tracker",
    "recommended_approach": "Lead with fuel savings",
}
LEGAL_REVIEW = {
    "reasoning": ["standard terms"],
    "risk_level": "low",
    "risk_flags": [],
    "approval_status": "approved",
    "notes": "",
}
RESEARCH = {
    "summary": "Fleet Tracker sells to logistics firms",
    "trends": ["telematics", "telematics", " fuel costs "],
    "opportunities": ["mid-size fleets"],
    "target_segments": ["logistics"],
}


def negotiation_reply(action, **fields):
    """A reasoning-service answer for one inbound reply."""
    data = {
        "reasoning": ["read the reply"],
        "action": action,
        "customer_intent": f"customer is {action}",
        "customer_sentiment": "positive",
        "reply_subject": "Re: Fleet Tracker",
        "reply_body": f"Reply for {action}",
    }
    data.update(fields)
    return data


class FakeLLM:
    """Answers each agent prompt with canned JSON; negotiation answers are queued."""

    def __init__(self):
        self.negotiation = []
        self.prompts = []
        self.fail_on = None

    def __call__(self, prompt, max_tokens=2048):
        self.prompts.append(prompt)
        if self.fail_on and self.fail_on in prompt:
            raise RuntimeError("reasoning service unavailable")
        if "You are the sales agent negotiating" in prompt:
            answer = self.negotiation.pop(0)
            return answer if isinstance(answer, str) else json.dumps(answer)
        if "You are the marketing agent" in prompt:
            return json.dumps(ENRICHMENT)
        if "You are the legal agent" in prompt:
            return json.dumps(LEGAL_REVIEW)
        if "You are the marketing research agent" in prompt:
            return json.dumps(RESEARCH)
        if "You write emails on behalf of" in prompt:
            return json.dumps({"subject": "Hello from Acme", "body": "Dear customer, ..."})
        raise AssertionError(f"unexpected prompt: {prompt[:80]}")


class FailingTransport(LogOnlyTransport):
    async def send(self, to, subject, body, thread_refs=None, attachments=None):
        self.outbox.append({"to": to, "subject": subject, "failed": True})
        return SendResult(sent=False, error="SMTP 421 service not available")


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def transport():
    return LogOnlyTransport()


@pytest.fixture
def task_queue(session_factory):
    return TaskQueue(session_factory, TaskLogBuffer())


@pytest.fixture
def settings_store(session_factory):
    return SettingsStore(session_factory)


@pytest.fixture
def engine(session_factory, task_queue, transport, llm, settings_store):
    return WorkflowEngine(
        session_factory=session_factory,
        task_queue=task_queue,
        mailer=Mailer(transport, session_factory),
        llm=llm,
        settings_store=settings_store,
        invoices=InvoiceService(session_factory),
    )


@pytest.fixture
def company(session_factory):
    db = session_factory()
    try:
        company = Company(
            name="Acme Telematics",
            industry="Software",
            products_services="Fleet Tracker subscriptions",
            sender_name="Acme Sales",
            sender_email="sales@acme.test",
        )
        db.add(company)
        db.commit()
        return company.id
    finally:
        db.close()


@pytest.fixture
def lead(session_factory, company):
    db = session_factory()
    try:
        lead = Lead(
            company_id=company,
            company_name="Northwind Freight",
            contact_name="Dana Reyes",
            contact_email="dana@northwind.test",
            product_interest="Fleet Tracker",
        )
        db.add(lead)
        db.commit()
        return lead.id
    finally:
        db.close()


@pytest.fixture
def make_deal(session_factory, company, lead):
    """Insert a deal directly; ``age`` backdates updated_at (and closed_at for closed deals)."""

    def _make(status="contacted", age=None, closed_age=None, **fields):
        db = session_factory()
        try:
            deal = Deal(company_id=company, lead_id=lead, status=status, **fields)
            db.add(deal)
            db.commit()
            backdate = {}
            if age is not None:
                backdate["updated_at"] = utcnow() - age
            if closed_age is not None:
                backdate["closed_at"] = utcnow() - closed_age
            if backdate:
                db.query(Deal).filter(Deal.id == deal.id).update(backdate, synchronize_session=False)
                db.commit()
            return deal.id
        finally:
            db.close()

    return _make


@pytest.fixture
def load(session_factory):
    """Fetch one row by primary key in a throwaway session."""

    def _load(model, row_id):
        db = session_factory()
        try:
            return db.get(model, row_id)
        finally:
            db.close()

    return _load


@pytest.fixture
def draft(session_factory, company, lead, make_deal):
    """A deal holding one pending offer draft (1 x 100 @ 24%); deal fields go to make_deal."""

    def _draft(status="in_pipeline", action="wants_offer", **deal_fields):
        deal_id = make_deal(status=status, negotiation_round=3, **deal_fields)
        db = session_factory()
        try:
            offer = PendingOffer(
                company_id=company,
                deal_id=deal_id,
                lead_id=lead,
                action=action,
                offer_product_name="Fleet Tracker",
                offer_quantity=1,
                offer_unit_price=100.0,
                offer_tax_rate=0.24,
                offer_subtotal=100.0,
                offer_tax_amount=24.0,
                offer_total_amount=124.0,
                reply_subject="Re: Fleet Tracker",
                reply_body="Please find our offer attached.",
                in_reply_to="<m1@northwind.test>",
                references="<m1@northwind.test>",
                round_number=3,
            )
            db.add(offer)
            db.commit()
            return deal_id, offer.id
        finally:
            db.close()

    return _draft
