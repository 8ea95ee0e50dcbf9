import logging
from typing import Callable

from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.schemas.agent import LegalReview
from app.services.llm import call_llm, call_llm_json

logger = logging.getLogger(__name__)


def review_deal(deal: Deal, lead: Lead, company: Company, llm: Callable = None) -> LegalReview:
    """Compliance review of a won deal before invoicing. Advisory only."""
    prompt = f"""{company.context_block()}

You are the legal agent. Review this B2B deal before it is invoiced.

CUSTOMER:
- Company: {lead.company_name}
- Contact: {lead.contact_name}
- Email: {lead.contact_email or 'Not provided'}
- Industry: {lead.industry or 'Unknown'}

DEAL:
- Product: {deal.product_name}
- Quantity: {deal.quantity}
- Subtotal: {deal.subtotal:.2f}
- Tax ({deal.tax_rate * 100:.0f}%): {deal.tax_amount:.2f}
- Total: {deal.total_amount:.2f}

Check data-protection consent, standard payment and delivery terms and any risk
worth flagging to a human.

Respond with ONLY a JSON object:
{{
  "reasoning": ["step 1", "step 2"],
  "risk_level": "low|medium|high",
  "risk_flags": ["..."],
  "approval_status": "approved|rejected|review_required",
  "notes": "..."
}}"""
    review = call_llm_json(prompt, LegalReview, max_tokens=1024, llm=llm or call_llm)
    logger.info("Legal review for deal %s: %s (risk=%s)", deal.id, review.approval_status, review.risk_level)
    return review
