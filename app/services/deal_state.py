"""Deal pipeline state machine.

    contacted ──> in_pipeline ──> offer_sent ──> closed_won
        │              │   ^          │
        │              │   └──────────┤ (draft rejected)
        └──────────────┴──────────────┴──> closed_lost ──> reopened

Older rows may still carry pre-rename statuses; ``normalize_status`` maps
them onto the canonical names and ``statuses_matching`` expands a canonical
name back into every alias for queries.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, FrozenSet, List, Optional

from app.database import utcnow
from app.errors import InvalidTransitionError
from app.models.deal import Deal
from app.schemas.offer import OfferPricing

logger = logging.getLogger(__name__)

CONTACTED = "contacted"
IN_PIPELINE = "in_pipeline"
OFFER_SENT = "offer_sent"
CLOSED_WON = "closed_won"
CLOSED_LOST = "closed_lost"
REOPENED = "reopened"

CANONICAL_STATUSES = (CONTACTED, IN_PIPELINE, OFFER_SENT, CLOSED_WON, CLOSED_LOST, REOPENED)

LEGACY_STATUS_MAP: Dict[str, str] = {
    "lead_contacted": CONTACTED,
    "proposal_sent": OFFER_SENT,
    "negotiating": OFFER_SENT,
    "completed": CLOSED_WON,
    "failed": CLOSED_LOST,
    "no_response": CLOSED_LOST,
}

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    CONTACTED: frozenset({IN_PIPELINE, OFFER_SENT, CLOSED_LOST}),
    IN_PIPELINE: frozenset({OFFER_SENT, CLOSED_LOST}),
    OFFER_SENT: frozenset({IN_PIPELINE, CLOSED_WON, CLOSED_LOST}),
    CLOSED_LOST: frozenset({REOPENED}),
    CLOSED_WON: frozenset(),
    REOPENED: frozenset(),
}

# Deals the reply poller reads mail for
REPLYABLE_STATUSES = (CONTACTED, IN_PIPELINE, OFFER_SENT)
EARLY_STATUSES = (CONTACTED, IN_PIPELINE)
TERMINAL_STATUSES = (CLOSED_WON, REOPENED)


def normalize_status(status: str) -> str:
    return LEGACY_STATUS_MAP.get(status, status)


def statuses_matching(*canonical: str) -> List[str]:
    """Every stored value (canonical or legacy) that means one of ``canonical``."""
    wanted = set(canonical)
    matches = list(canonical)
    matches.extend(legacy for legacy, target in LEGACY_STATUS_MAP.items() if target in wanted)
    return matches


def can_transition(current: str, target: str) -> bool:
    current = normalize_status(current)
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(deal: Deal, target: str) -> bool:
    """Move ``deal`` to ``target`` in memory; the caller commits.

    Returns False for a same-state write (nothing changes). Raises
    InvalidTransitionError for anything the table does not allow.
    """
    if target not in CANONICAL_STATUSES:
        raise InvalidTransitionError(deal.status, target)

    current = normalize_status(deal.status)
    if current == target:
        if deal.status != current:
            deal.status = current
        return False
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)

    deal.status = target
    if target in (CLOSED_WON, CLOSED_LOST):
        deal.closed_at = utcnow()
    if target in (CLOSED_LOST, REOPENED):
        _withdraw_pending_offers(deal)
    logger.info("Deal %s: %s -> %s", deal.id, current, target)
    return True


def _withdraw_pending_offers(deal: Deal) -> None:
    """A lost or reopened deal cannot take an offer; unresolved drafts become rejected."""
    for offer in deal.pending_offers:
        if offer.status == "pending":
            offer.status = "rejected"
            offer.resolved_at = utcnow()
            logger.info("Deal %s: pending offer %s withdrawn", deal.id, offer.id)


# ── Pricing ──

_CENTS = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def compute_pricing(quantity: int, unit_price: float, tax_rate: float) -> OfferPricing:
    """subtotal = quantity x unit price; tax rounded half-up to cents; total = subtotal + tax."""
    subtotal = _money(Decimal(quantity) * Decimal(str(unit_price)))
    tax = _money(subtotal * Decimal(str(tax_rate)))
    return OfferPricing(
        quantity=quantity,
        unit_price=float(unit_price),
        tax_rate=float(tax_rate),
        subtotal=float(subtotal),
        tax_amount=float(tax),
        total_amount=float(subtotal + tax),
    )


def apply_pricing(deal: Deal, pricing: OfferPricing, product_name: Optional[str] = None) -> None:
    """The only place deal pricing columns are written."""
    if product_name:
        deal.product_name = product_name
    deal.quantity = pricing.quantity
    deal.tax_rate = pricing.tax_rate
    deal.subtotal = pricing.subtotal
    deal.tax_amount = pricing.tax_amount
    deal.total_amount = pricing.total_amount
