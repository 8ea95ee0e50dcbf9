"""Structured output of the negotiation step.

``NegotiationAnalysis`` is the flat JSON shape the reasoning service is asked
to return. After the guardrails run it is narrowed into a
``NegotiationDecision``: a union discriminated on ``action`` so callers
branch on the decision type instead of null-checking optional offer fields.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


NegotiationAction = Literal["discovery", "engaged", "wants_offer", "accepted", "counter", "new_offer", "declined"]
PRICING_ACTIONS = ("wants_offer", "counter", "new_offer")
TERMINAL_ACTIONS = ("accepted", "declined")


class NegotiationAnalysis(BaseModel):
    """Raw reasoning-service output for one inbound reply."""
    reasoning: List[str] = Field(default_factory=list)
    action: NegotiationAction
    customer_intent: str = ""
    customer_sentiment: Literal["positive", "neutral", "negative"] = "neutral"
    reply_subject: str
    reply_body: str
    updated_lead_profile: Optional[Dict[str, Any]] = None
    offer_product_name: Optional[str] = None
    offer_quantity: Optional[int] = Field(None, ge=1)
    offer_unit_price: Optional[float] = Field(None, ge=0)
    offer_tax_rate: Optional[float] = Field(None, ge=0, le=1)
    offer_summary: Optional[str] = None
    failure_reason: Optional[str] = None


class OfferDraft(BaseModel):
    product_name: str
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)
    tax_rate: float = Field(0.24, ge=0, le=1)
    subtotal: float = 0.0
    tax_amount: float = 0.0
    total_amount: float = 0.0
    summary: Optional[str] = None


class _DecisionBase(BaseModel):
    reply_subject: str
    reply_body: str
    customer_intent: str = ""
    customer_sentiment: str = "neutral"
    updated_lead_profile: Optional[Dict[str, Any]] = None
    reasoning: List[str] = Field(default_factory=list)
    # Guardrail that rewrote the reasoning service's action, if any
    overridden_from: Optional[str] = None


class DiscoveryDecision(_DecisionBase):
    action: Literal["discovery"] = "discovery"


class EngagedDecision(_DecisionBase):
    action: Literal["engaged"] = "engaged"


class PricingDecision(_DecisionBase):
    action: Literal["wants_offer", "counter", "new_offer"]
    draft: OfferDraft


class AcceptedDecision(_DecisionBase):
    action: Literal["accepted"] = "accepted"


class DeclinedDecision(_DecisionBase):
    action: Literal["declined"] = "declined"
    reason: str


NegotiationDecision = Annotated[
    Union[DiscoveryDecision, EngagedDecision, PricingDecision, AcceptedDecision, DeclinedDecision],
    Field(discriminator="action"),
]


class NegotiationInput(BaseModel):
    """Everything the negotiation step sees for one inbound reply."""
    deal_id: str
    deal_status: str
    product_name: Optional[str] = None
    quantity: int = 1
    subtotal: float = 0.0
    total_amount: float = 0.0
    lead_name: str
    lead_company: str
    lead_profile: Dict[str, Any] = Field(default_factory=dict)
    inbound_subject: str = ""
    inbound_body: str
    round_number: int = Field(..., ge=1)
    max_rounds: int
    min_replies_before_offer: int
    default_tax_rate: float = 0.24
    company_context: str = ""
    conversation: List[str] = Field(default_factory=list)
