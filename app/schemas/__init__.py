from .deal import LeadCreate, LeadResponse, DealResponse, DealListResponse
from .task import TaskCreate, TaskLogEntry, TaskResponse
from .offer import OfferEdits, OfferPricing, PendingOfferResponse
from .negotiation import (
    NegotiationAnalysis,
    NegotiationDecision,
    OfferDraft,
    DiscoveryDecision,
    EngagedDecision,
    PricingDecision,
    AcceptedDecision,
    DeclinedDecision,
    NegotiationInput,
)
from .agent import LeadEnrichment, ComposedEmail, LegalReview, ResearchFindings, WorkflowResult

__all__ = [
    # Deal schemas
    "LeadCreate",
    "LeadResponse",
    "DealResponse",
    "DealListResponse",
    # Task schemas
    "TaskCreate",
    "TaskLogEntry",
    "TaskResponse",
    # Offer schemas
    "OfferEdits",
    "OfferPricing",
    "PendingOfferResponse",
    # Negotiation schemas
    "NegotiationAnalysis",
    "NegotiationDecision",
    "OfferDraft",
    "DiscoveryDecision",
    "EngagedDecision",
    "PricingDecision",
    "AcceptedDecision",
    "DeclinedDecision",
    "NegotiationInput",
    # Agent schemas
    "LeadEnrichment",
    "ComposedEmail",
    "LegalReview",
    "ResearchFindings",
    "WorkflowResult",
]
