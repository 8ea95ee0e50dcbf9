"""Structured outputs of the supporting agents (enrichment, outreach, legal, research)."""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal


class LeadEnrichment(BaseModel):
    reasoning: List[str] = Field(default_factory=list)
    industry: Optional[str] = None
    company_size: Optional[str] = None
    lead_score: Literal["A", "B", "C"] = "B"
    product_interest: Optional[str] = None
    recommended_approach: Optional[str] = None


class ComposedEmail(BaseModel):
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)


class LegalReview(BaseModel):
    reasoning: List[str] = Field(default_factory=list)
    risk_level: Literal["low", "medium", "high"] = "low"
    risk_flags: List[str] = Field(default_factory=list)
    approval_status: Literal["approved", "rejected", "review_required"] = "approved"
    notes: str = ""


class ResearchFindings(BaseModel):
    summary: str
    trends: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    target_segments: List[str] = Field(default_factory=list)


class WorkflowResult(BaseModel):
    """Return value of the engine's entry points (also the HTTP response body)."""
    status: str
    message: str
    deal_id: Optional[str] = None
    lead_id: Optional[str] = None
    action: Optional[str] = None
    round: Optional[int] = None
    pending_offer_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
