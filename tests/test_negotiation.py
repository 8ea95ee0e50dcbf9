import json

import pytest

from app.agents.negotiation import MAX_ROUNDS_REASON, apply_guardrails, run_negotiation
from app.errors import LLMOutputError
from app.schemas.negotiation import (
    AcceptedDecision,
    DeclinedDecision,
    EngagedDecision,
    NegotiationAnalysis,
    NegotiationInput,
    PricingDecision,
)
from conftest import negotiation_reply


def _input(**overrides):
    fields = dict(
        deal_id="d1",
        deal_status="in_pipeline",
        product_name="Fleet Tracker",
        quantity=1,
        lead_name="Dana Reyes",
        lead_company="Northwind Freight",
        lead_profile={"knows_offering": True},
        inbound_subject="Fleet Tracker",
        inbound_body="What would 3 licences cost?",
        round_number=3,
        max_rounds=6,
        min_replies_before_offer=3,
    )
    fields.update(overrides)
    return NegotiationInput(**fields)


def _scripted(*answers):
    queue = list(answers)

    def llm(prompt, max_tokens=2048):
        answer = queue.pop(0)
        return answer if isinstance(answer, str) else json.dumps(answer)

    return llm


def test_pricing_locked_before_min_replies():
    analysis = NegotiationAnalysis(**negotiation_reply("wants_offer"))
    outcome = apply_guardrails(analysis, _input(round_number=2))
    assert outcome["action"] == "engaged"
    assert outcome["overridden_from"] == "wants_offer"


def test_pricing_locked_until_lead_knows_offering():
    analysis = NegotiationAnalysis(**negotiation_reply("counter"))
    outcome = apply_guardrails(analysis, _input(lead_profile={}))
    assert outcome["action"] == "engaged"


def test_acceptance_requires_sent_offer():
    analysis = NegotiationAnalysis(**negotiation_reply("accepted"))
    assert apply_guardrails(analysis, _input(deal_status="in_pipeline"))["action"] == "engaged"
    assert apply_guardrails(analysis, _input(deal_status="proposal_sent"))["action"] == "accepted"


@pytest.mark.parametrize("action", ["discovery", "engaged", "wants_offer", "counter", "new_offer"])
def test_round_limit_forces_decline(action):
    analysis = NegotiationAnalysis(**negotiation_reply(action))
    outcome = apply_guardrails(analysis, _input(round_number=6, deal_status="offer_sent"))
    assert outcome["action"] == "declined"
    assert outcome["decline_reason"] == MAX_ROUNDS_REASON
    assert outcome["reply_subject"] == "Re: Fleet Tracker"


def test_round_limit_keeps_terminal_actions():
    analysis = NegotiationAnalysis(**negotiation_reply("accepted"))
    outcome = apply_guardrails(analysis, _input(round_number=7, deal_status="offer_sent"))
    assert outcome["action"] == "accepted"
    assert outcome["overridden_from"] is None


def test_pricing_decision_recomputes_totals():
    llm = _scripted(negotiation_reply(
        "wants_offer", offer_quantity=3, offer_unit_price=100, offer_tax_rate=0.24,
        updated_lead_profile={"needs": ["tracking"]},
    ))
    decision = run_negotiation(_input(), llm=llm)

    assert isinstance(decision, PricingDecision)
    assert decision.draft.product_name == "Fleet Tracker"
    assert (decision.draft.subtotal, decision.draft.tax_amount, decision.draft.total_amount) == (300.0, 72.0, 372.0)
    assert decision.updated_lead_profile == {"needs": ["tracking"]}


def test_pricing_without_a_price_continues_engaged():
    decision = run_negotiation(_input(), llm=_scripted(negotiation_reply("wants_offer")))
    assert isinstance(decision, EngagedDecision)
    assert decision.overridden_from == "wants_offer"


def test_declined_carries_reason():
    llm = _scripted(negotiation_reply("declined", failure_reason="budget frozen"))
    decision = run_negotiation(_input(round_number=1), llm=llm)
    assert isinstance(decision, DeclinedDecision)
    assert decision.reason == "budget frozen"


def test_malformed_output_retried_once():
    llm = _scripted("I think they like it", "```json\n" + json.dumps(negotiation_reply("accepted")) + "\n```")
    decision = run_negotiation(_input(deal_status="offer_sent"), llm=llm)
    assert isinstance(decision, AcceptedDecision)


def test_malformed_output_twice_raises():
    llm = _scripted("not json", json.dumps({"action": "shrug"}))
    with pytest.raises(LLMOutputError):
        run_negotiation(_input(), llm=llm)
