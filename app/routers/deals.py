from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.errors import EntityNotFoundError
from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.schemas.deal import DealListResponse, DealResponse, LeadCreate, LeadResponse
from app.services import deal_state

router = APIRouter(prefix="/api", tags=["Deals"])


@router.post("/leads", response_model=LeadResponse, status_code=201)
def create_lead(payload: LeadCreate, db: Session = Depends(get_db)):
    """Register a lead; start its workflow with POST /api/workflows/trigger/{lead_id}."""
    if not db.query(Company.id).filter(Company.id == payload.company_id).first():
        raise EntityNotFoundError("Company", payload.company_id)

    lead = Lead(**payload.model_dump(), status="new")
    db.add(lead)
    db.commit()
    db.refresh(lead)
    return lead


@router.get("/deals", response_model=DealListResponse)
def list_deals(
    company_id: str | None = Query(None),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """
    List deals with optional filters. ``status`` takes a pipeline status and
    also matches rows stored under its legacy names.
    """
    query = db.query(Deal)
    if company_id:
        query = query.filter(Deal.company_id == company_id)
    if status:
        query = query.filter(Deal.status.in_(deal_state.statuses_matching(deal_state.normalize_status(status))))

    deals = query.order_by(Deal.updated_at.desc()).all()
    return DealListResponse(deals=[DealResponse.model_validate(d) for d in deals], total=len(deals))


@router.get("/deals/{deal_id}", response_model=DealResponse)
def get_deal(deal_id: str, db: Session = Depends(get_db)):
    deal = db.query(Deal).filter(Deal.id == deal_id).first()
    if not deal:
        raise EntityNotFoundError("Deal", deal_id)
    return deal
