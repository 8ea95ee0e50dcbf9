from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class OfferEdits(BaseModel):
    """Fields a reviewer may change before approving a drafted offer."""
    product_name: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)
    unit_price: Optional[float] = Field(None, ge=0)
    tax_rate: Optional[float] = Field(None, ge=0, le=1)
    summary: Optional[str] = None
    reply_subject: Optional[str] = None
    reply_body: Optional[str] = None


class OfferPricing(BaseModel):
    quantity: int
    unit_price: float
    tax_rate: float
    subtotal: float
    tax_amount: float
    total_amount: float


class PendingOfferResponse(BaseModel):
    id: str
    deal_id: str
    lead_id: str
    action: str
    offer_product_name: str
    offer_quantity: int
    offer_unit_price: float
    offer_tax_rate: float
    offer_subtotal: float
    offer_tax_amount: float
    offer_total_amount: float
    offer_summary: Optional[str] = None
    reply_subject: str
    reply_body: str
    round_number: int
    status: str
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
