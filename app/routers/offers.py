from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.agents.orchestrator import WorkflowEngine
from app.dependencies import get_engine
from app.schemas.offer import OfferEdits, PendingOfferResponse

router = APIRouter(prefix="/api/offers", tags=["Offers"])


@router.get("", response_model=List[PendingOfferResponse])
def list_pending_offers(
    company_id: Optional[str] = Query(None),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Offers waiting for a reviewer, oldest first."""
    return engine.offers.list_pending(company_id)


@router.post("/deal/{deal_id}/approve", response_model=PendingOfferResponse)
async def approve_offer(
    deal_id: str,
    edits: Optional[OfferEdits] = None,
    engine: WorkflowEngine = Depends(get_engine),
):
    """
    Approve the deal's pending offer, optionally editing product, quantity,
    price, tax rate or the reply text first. The offer document is emailed
    and the deal moves to offer_sent.
    """
    return await engine.offers.approve_for_deal(deal_id, edits)


@router.post("/deal/{deal_id}/reject", response_model=PendingOfferResponse)
async def reject_offer(deal_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """Reject the deal's pending offer; the deal returns to in_pipeline."""
    return await engine.offers.reject_for_deal(deal_id)
