from typing import TypedDict, List, Dict, Any, Optional

from app.schemas.negotiation import NegotiationAnalysis, NegotiationInput


class NegotiationState(TypedDict, total=False):
    """State for the negotiation flow (analyze -> guardrails -> draft)."""
    task_id: Optional[str]
    # Input
    input: NegotiationInput
    # Reasoning-service output, validated
    analysis: NegotiationAnalysis
    # Guardrail outcome
    action: str
    overridden_from: Optional[str]
    decline_reason: Optional[str]
    reply_subject: str
    reply_body: str
    # Final tagged decision (a NegotiationDecision member)
    decision: Any
    # Flow control
    current_step: str
    guardrail_notes: List[str]


class ResearchState(TypedDict, total=False):
    """State for the scheduled market-research flow."""
    company_id: str
    company_context: str
    pipeline_snapshot: Dict[str, Any]
    findings: Dict[str, Any]
    current_step: str
    errors: List[str]
