"""Lead enrichment (marketing) and customer email composition."""
import logging
from typing import Any, Callable, Dict, Optional

from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.schemas.agent import ComposedEmail, LeadEnrichment
from app.services.llm import call_llm, call_llm_json

logger = logging.getLogger(__name__)

EMAIL_KINDS = ("cold_outreach", "follow_up", "satisfaction", "invoice", "reopen")

_KIND_INSTRUCTIONS = {
    "cold_outreach": (
        "Write a first-contact email introducing our company and asking one open question "
        "about their needs. Do not mention prices."
    ),
    "follow_up": (
        "We sent an offer and have not heard back. Write a short, polite follow-up "
        "(attempt {attempt} of {max_attempts}) asking whether they had a chance to review it."
    ),
    "satisfaction": (
        "The deal was completed a few days ago. Thank them and ask whether everything "
        "is working as expected and whether they need anything else."
    ),
    "invoice": (
        "Send invoice {invoice_number} for a total of {total_amount:.2f}. Thank them for "
        "their business and mention payment is due within 14 days."
    ),
    "reopen": (
        "We spoke some time ago but did not reach an agreement. Reintroduce the offering "
        "briefly and ask whether their situation has changed."
    ),
}


def _lead_block(lead: Lead) -> str:
    return f"""LEAD:
- Company: {lead.company_name}
- Contact: {lead.contact_name}
- Email: {lead.contact_email or 'Not provided'}
- Website: {lead.company_website or 'Not provided'}
- Industry: {lead.industry or 'Unknown'}
- Interested in: {lead.product_interest or 'Unknown'}"""


def enrich_lead(lead: Lead, company: Company, llm: Callable = None) -> LeadEnrichment:
    """Infer industry, size and an A/B/C score for a new lead."""
    prompt = f"""{company.context_block()}

You are the marketing agent. Qualify this incoming lead for our sales team.

{_lead_block(lead)}

Do NOT downgrade a lead only because the email is on a free/personal domain.

Respond with ONLY a JSON object:
{{
  "reasoning": ["step 1", "step 2"],
  "industry": "the industry",
  "company_size": "e.g. 10-50 employees",
  "lead_score": "A|B|C",
  "product_interest": "which of our products/services fits best",
  "recommended_approach": "one sentence"
}}"""
    result = call_llm_json(prompt, LeadEnrichment, max_tokens=1024, llm=llm or call_llm)
    logger.info("Lead %s enriched: score=%s industry=%s", lead.id, result.lead_score, result.industry)
    return result


class EmailComposer:
    """Writes customer-facing emails with the reasoning service."""

    def __init__(self, llm: Callable = None):
        self.llm = llm or call_llm

    def compose(
        self,
        kind: str,
        company: Company,
        lead: Lead,
        deal: Optional[Deal] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ComposedEmail:
        if kind not in _KIND_INSTRUCTIONS:
            raise ValueError(f"Unknown email kind '{kind}'")
        instruction = _KIND_INSTRUCTIONS[kind].format(**(context or {}))

        deal_block = ""
        if deal is not None:
            deal_block = f"""
DEAL:
- Product: {deal.product_name or 'not decided yet'}
- Quantity: {deal.quantity}
- Total: {deal.total_amount:.2f}"""

        sender = company.sender_name or company.name
        prompt = f"""{company.context_block()}

You write emails on behalf of {sender}.
{_lead_block(lead)}
{deal_block}

TASK: {instruction}

Respond with ONLY a JSON object: {{"subject": "...", "body": "..."}}"""

        email = call_llm_json(prompt, ComposedEmail, max_tokens=1024, llm=self.llm)
        logger.info("Composed %s email for lead %s: '%s'", kind, lead.id, email.subject)
        return email
