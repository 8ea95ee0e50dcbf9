import json
import logging

import pytest
from pydantic import ValidationError

from app.agents.outreach import EmailComposer
from app.config import PipelineSettings
from app.database import utcnow
from app.errors import AgentFlowError, LLMOutputError
from app.logging_config import AgentFlowFormatter, component_for
from app.models.company import Company
from app.models.deal import Deal
from app.models.invoice import Invoice
from app.models.lead import Lead
from app.models.setting import AppSetting
from app.schemas.agent import ComposedEmail
from app.services.documents import render_invoice, render_offer
from app.services.deal_state import compute_pricing
from app.services.invoicing import next_invoice_number
from app.services.llm import call_llm_json, parse_json_response
from app.services.settings_store import PIPELINE_KEY


# ── Invoicing ──

def test_invoice_issue_is_idempotent(engine, make_deal):
    deal_id = make_deal(status="closed_won", subtotal=300.0, tax_amount=72.0, total_amount=372.0)

    first = engine.invoices.issue(deal_id)
    second = engine.invoices.issue(deal_id)

    assert first.id == second.id
    assert first.total_amount == 372.0
    assert first.customer_name == "Northwind Freight"


def test_invoice_numbers_are_sequential_per_company(engine, make_deal, session_factory):
    a = engine.invoices.issue(make_deal(status="closed_won"))
    b = engine.invoices.issue(make_deal(status="closed_won"))
    year = a.invoice_number.split("/")[0]

    assert a.invoice_number.endswith("/001")
    assert b.invoice_number == f"{year}/002"

    db = session_factory()
    try:
        assert next_invoice_number(db, "other-company", int(year)) == f"{year}/001"
    finally:
        db.close()


def test_only_won_deals_are_invoiced(engine, make_deal):
    with pytest.raises(AgentFlowError):
        engine.invoices.issue(make_deal(status="offer_sent"))


# ── Settings ──

def test_settings_defaults_and_update(settings_store):
    assert settings_store.load().stale_lead_days == 7

    updated = settings_store.update({"stale_lead_days": 14, "max_followup_attempts": 5})

    assert updated.stale_lead_days == 14
    assert settings_store.load().max_followup_attempts == 5
    assert settings_store.load().lost_deal_reopen_days == 60


@pytest.mark.parametrize("changes", [
    {"stale_lead_days": 0},
    {"max_followup_attempts": 11},
    {"default_tax_rate": 1.5},
    {"auto_retry_roles": ["email", "accounting"]},
])
def test_settings_out_of_range_rejected(settings_store, changes):
    with pytest.raises(ValidationError):
        settings_store.update(changes)
    assert settings_store.load() == PipelineSettings()


def test_settings_assignment_is_validated(settings_store):
    pipeline = settings_store.load()
    with pytest.raises(ValidationError):
        pipeline.reply_poll_interval_minutes = 0


@pytest.mark.parametrize("changes", [
    {"max_offer_rounds": 2, "min_replies_before_offer": 5},
    {"max_offer_rounds": 3},
    {"min_replies_before_offer": 6},
])
def test_offer_rounds_must_leave_room_for_pricing(settings_store, changes):
    with pytest.raises(ValidationError, match="max_offer_rounds"):
        settings_store.update(changes)
    assert settings_store.load() == PipelineSettings()

    pipeline = settings_store.load()
    with pytest.raises(ValidationError):
        pipeline.max_offer_rounds = pipeline.min_replies_before_offer


def test_invalid_stored_settings_fall_back_to_defaults(settings_store, session_factory):
    db = session_factory()
    try:
        db.add(AppSetting(key=PIPELINE_KEY, value={"max_offer_rounds": 2, "min_replies_before_offer": 5}))
        db.commit()
    finally:
        db.close()

    assert settings_store.load() == PipelineSettings()


# ── LLM helpers ──

def test_parse_json_response_tolerates_wrapping():
    assert parse_json_response('<think>hmm</think>```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_response('Sure! {"a": {"b": 2}} Hope that helps') == {"a": {"b": 2}}
    with pytest.raises(ValueError):
        parse_json_response("[1, 2]")


def test_call_llm_json_retries_with_strict_instruction():
    prompts = []

    def llm(prompt, max_tokens):
        prompts.append(prompt)
        if len(prompts) == 1:
            return "Subject: hi"
        return json.dumps({"subject": "Hi", "body": "Hello"})

    email = call_llm_json("write", ComposedEmail, llm=llm)

    assert email.subject == "Hi"
    assert "IMPORTANT" in prompts[1]


def test_call_llm_json_gives_up_after_retry():
    with pytest.raises(LLMOutputError):
        call_llm_json("write", ComposedEmail, llm=lambda prompt, max_tokens: '{"subject": ""}')


# ── Composer ──

def _company_and_lead():
    company = Company(name="Acme Telematics", communication_language="English")
    lead = Lead(id="l1", company_name="Northwind Freight", contact_name="Dana Reyes")
    return company, lead


def test_composer_fills_kind_context(llm):
    company, lead = _company_and_lead()
    deal = Deal(product_name="Fleet Tracker", quantity=3, total_amount=372.0)

    EmailComposer(llm).compose("follow_up", company, lead, deal, {"attempt": 2, "max_attempts": 3})

    assert "attempt 2 of 3" in llm.prompts[-1]
    assert "Total: 372.00" in llm.prompts[-1]


def test_composer_rejects_unknown_kind(llm):
    company, lead = _company_and_lead()
    with pytest.raises(ValueError):
        EmailComposer(llm).compose("newsletter", company, lead)


# ── Documents ──

def test_rendered_documents_are_docx():
    company, lead = _company_and_lead()
    offer = render_offer(company, lead, "Fleet Tracker", compute_pricing(3, 100, 0.24), "Annual plan")
    assert offer[:2] == b"PK"

    invoice = Invoice(
        invoice_number="2026/001", customer_name="Northwind Freight", subtotal=300.0, tax_rate=0.24,
        tax_amount=72.0, total_amount=372.0, created_at=utcnow(),
    )
    assert render_invoice(company, invoice, "Fleet Tracker", 3)[:2] == b"PK"


# ── Logging ──

def test_log_lines_are_tagged_by_component():
    record = logging.LogRecord("app.services.lifecycle_poller", logging.INFO, __file__, 1, "swept %d deal(s)", (2,), None)
    line = AgentFlowFormatter(colour=False).format(record)

    assert line.endswith("INFO    [POLLER] swept 2 deal(s)")
    assert "\033[" not in line
    assert component_for("app.agents.orchestrator")[0] == "ENGINE"
    assert component_for("app.agents.research")[0] == "AGENT"
    assert component_for("app.services.audit")[0] == "AUDIT"
