import json
import logging
from typing import Any, Callable, Dict, Optional

from langgraph.graph import StateGraph, END

from app.agents.state import NegotiationState
from app.schemas.negotiation import (
    PRICING_ACTIONS,
    TERMINAL_ACTIONS,
    AcceptedDecision,
    DeclinedDecision,
    DiscoveryDecision,
    EngagedDecision,
    NegotiationAnalysis,
    NegotiationInput,
    OfferDraft,
    PricingDecision,
)
from app.services import deal_state
from app.services.llm import call_llm, call_llm_json

logger = logging.getLogger(__name__)

MAX_ROUNDS_REASON = "maximum negotiation rounds exhausted"


def build_prompt(inp: NegotiationInput) -> str:
    conversation = "\n---\n".join(inp.conversation[-6:]) or "(no earlier messages)"
    pricing_unlocked = inp.round_number >= inp.min_replies_before_offer and bool(
        inp.lead_profile.get("knows_offering")
    )

    return f"""{inp.company_context}

You are the sales agent negotiating deal {inp.deal_id} with {inp.lead_name} of {inp.lead_company}.
Current deal stage: {deal_state.normalize_status(inp.deal_status)}
Product on the table: {inp.product_name or 'not decided yet'} (quantity {inp.quantity}, current total {inp.total_amount:.2f})
Negotiation round: {inp.round_number} of at most {inp.max_rounds}

WHAT WE KNOW ABOUT THE LEAD:
{json.dumps(inp.lead_profile, indent=2, ensure_ascii=False) if inp.lead_profile else '{}'}

EARLIER CONVERSATION (oldest first):
{conversation}

LATEST REPLY FROM THE LEAD:
Subject: {inp.inbound_subject}
{inp.inbound_body}

Classify the reply into exactly one action:
- "discovery": we still need to learn what the lead needs; ask questions
- "engaged": the lead is interested; keep the conversation going
- "wants_offer": the lead asks for a price or a formal offer
- "counter": the lead counters an offer we already sent
- "new_offer": the lead wants a different product or quantity priced
- "accepted": the lead accepts the offer that was sent
- "declined": the lead is not interested
{'Pricing is allowed in this round.' if pricing_unlocked else 'Do NOT quote prices yet: keep learning about the lead and explain the offering.'}
Set "knows_offering": true in updated_lead_profile once our replies have explained what we offer.

Respond with ONLY a JSON object:
{{
  "reasoning": ["step 1", "step 2"],
  "action": "discovery|engaged|wants_offer|counter|new_offer|accepted|declined",
  "customer_intent": "one sentence",
  "customer_sentiment": "positive|neutral|negative",
  "reply_subject": "Re: ...",
  "reply_body": "the full reply to send",
  "updated_lead_profile": {{"knows_offering": false, "needs": []}},
  "offer_product_name": null,
  "offer_quantity": null,
  "offer_unit_price": null,
  "offer_tax_rate": null,
  "offer_summary": null,
  "failure_reason": null
}}"""


def closing_reply(inp: NegotiationInput) -> Dict[str, str]:
    subject = inp.inbound_subject if inp.inbound_subject.lower().startswith("re:") else f"Re: {inp.inbound_subject}"
    body = (
        f"Dear {inp.lead_name},\n\n"
        "Thank you for the time you have spent discussing this with us. As we have not been able "
        "to reach an agreement, we will close this proposal for now. Should your needs change, "
        "we would be glad to hear from you again.\n\n"
        "Kind regards"
    )
    return {"reply_subject": subject, "reply_body": body}


def apply_guardrails(analysis: NegotiationAnalysis, inp: NegotiationInput) -> Dict[str, Any]:
    """Deterministic rules applied on top of the reasoning service's action."""
    action = analysis.action
    notes = []

    if action in PRICING_ACTIONS:
        knows_offering = bool(inp.lead_profile.get("knows_offering"))
        if inp.round_number < inp.min_replies_before_offer or not knows_offering:
            notes.append(
                f"pricing locked (round {inp.round_number}/{inp.min_replies_before_offer}, "
                f"knows_offering={knows_offering})"
            )
            action = "engaged"

    if action == "accepted" and deal_state.normalize_status(inp.deal_status) != deal_state.OFFER_SENT:
        notes.append("acceptance without an offer on the table")
        action = "engaged"

    result: Dict[str, Any] = {
        "reply_subject": analysis.reply_subject,
        "reply_body": analysis.reply_body,
        "decline_reason": None,
    }

    if inp.round_number >= inp.max_rounds and action not in TERMINAL_ACTIONS:
        notes.append(f"round {inp.round_number} reached the limit of {inp.max_rounds}")
        action = "declined"
        result["decline_reason"] = MAX_ROUNDS_REASON
        result.update(closing_reply(inp))
    elif action == "declined":
        result["decline_reason"] = analysis.failure_reason or analysis.customer_intent or "declined by the lead"

    result["action"] = action
    result["overridden_from"] = analysis.action if action != analysis.action else None
    result["guardrail_notes"] = notes
    return result


def analyze_node(state: NegotiationState, llm: Callable) -> Dict[str, Any]:
    """Step 1: ask the reasoning service to classify the reply."""
    inp = state["input"]
    logger.info("analyze node: deal=%s round=%d/%d", inp.deal_id, inp.round_number, inp.max_rounds)
    analysis = call_llm_json(build_prompt(inp), NegotiationAnalysis, max_tokens=2048, llm=llm)
    logger.info("analyze node: action=%s sentiment=%s", analysis.action, analysis.customer_sentiment)
    return {"analysis": analysis, "current_step": "analyze"}


def guardrails_node(state: NegotiationState) -> Dict[str, Any]:
    """Step 2: enforce the pricing lock, acceptance and round-limit rules."""
    outcome = apply_guardrails(state["analysis"], state["input"])
    if outcome["overridden_from"]:
        logger.warning(
            "guardrails node: %s -> %s (%s)",
            outcome["overridden_from"], outcome["action"], "; ".join(outcome["guardrail_notes"]),
        )
    return {**outcome, "current_step": "guardrails"}


def _build_draft(analysis: NegotiationAnalysis, inp: NegotiationInput) -> Optional[OfferDraft]:
    product_name = analysis.offer_product_name or inp.product_name
    quantity = analysis.offer_quantity or inp.quantity or 1
    unit_price = analysis.offer_unit_price
    if unit_price is None and inp.subtotal and inp.quantity:
        unit_price = inp.subtotal / inp.quantity
    if not product_name or unit_price is None:
        return None

    tax_rate = analysis.offer_tax_rate if analysis.offer_tax_rate is not None else inp.default_tax_rate
    # Totals are always recomputed; the reasoning service's arithmetic is never used
    pricing = deal_state.compute_pricing(quantity, unit_price, tax_rate)
    return OfferDraft(
        product_name=product_name,
        quantity=pricing.quantity,
        unit_price=pricing.unit_price,
        tax_rate=pricing.tax_rate,
        subtotal=pricing.subtotal,
        tax_amount=pricing.tax_amount,
        total_amount=pricing.total_amount,
        summary=analysis.offer_summary,
    )


def draft_node(state: NegotiationState) -> Dict[str, Any]:
    """Step 3: build the typed decision, pricing drafts included."""
    analysis = state["analysis"]
    inp = state["input"]
    action = state["action"]
    common = {
        "reply_subject": state["reply_subject"],
        "reply_body": state["reply_body"],
        "customer_intent": analysis.customer_intent,
        "customer_sentiment": analysis.customer_sentiment,
        "updated_lead_profile": analysis.updated_lead_profile,
        "reasoning": analysis.reasoning + state.get("guardrail_notes", []),
        "overridden_from": state.get("overridden_from"),
    }

    if action in PRICING_ACTIONS:
        draft = _build_draft(analysis, inp)
        if draft is not None:
            decision = PricingDecision(action=action, draft=draft, **common)
        else:
            logger.warning("draft node: %s without product/price for deal %s, continuing as engaged", action, inp.deal_id)
            common["overridden_from"] = common["overridden_from"] or action
            decision = EngagedDecision(**common)
    elif action == "accepted":
        decision = AcceptedDecision(**common)
    elif action == "declined":
        decision = DeclinedDecision(reason=state["decline_reason"], **common)
    elif action == "discovery":
        decision = DiscoveryDecision(**common)
    else:
        decision = EngagedDecision(**common)

    return {"decision": decision, "current_step": "draft"}


def build_negotiation_graph(llm: Callable = None):
    """Construct the negotiation LangGraph."""
    llm = llm or call_llm

    def analyze(state: NegotiationState) -> Dict[str, Any]:
        return analyze_node(state, llm)

    workflow = StateGraph(NegotiationState)

    workflow.add_node("analyze", analyze)
    workflow.add_node("guardrails", guardrails_node)
    workflow.add_node("draft", draft_node)

    workflow.set_entry_point("analyze")
    workflow.add_edge("analyze", "guardrails")
    workflow.add_edge("guardrails", "draft")
    workflow.add_edge("draft", END)

    return workflow.compile()


negotiation_graph = build_negotiation_graph()


def run_negotiation(inp: NegotiationInput, llm: Callable = None, task_id: str = None):
    """Classify one inbound reply. Returns a NegotiationDecision member.

    Blocking (LLM call); the engine runs it with ``asyncio.to_thread``.
    Raises LLMOutputError when the reasoning service output stays malformed.
    """
    graph = negotiation_graph if llm is None else build_negotiation_graph(llm)
    result = graph.invoke({"input": inp, "task_id": task_id})
    return result["decision"]
