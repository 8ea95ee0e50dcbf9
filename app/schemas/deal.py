from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List


class LeadCreate(BaseModel):
    company_id: str
    company_name: str
    contact_name: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    product_interest: Optional[str] = None
    company_website: Optional[str] = None


class LeadResponse(BaseModel):
    id: str
    company_id: str
    company_name: str
    contact_name: str
    contact_email: Optional[str] = None
    status: str
    lead_score: Optional[str] = None
    source_lead_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DealResponse(BaseModel):
    id: str
    company_id: str
    lead_id: str
    status: str
    product_name: Optional[str] = None
    quantity: int
    subtotal: float
    tax_rate: float
    tax_amount: float
    total_amount: float
    negotiation_round: int
    follow_up_count: int
    satisfaction_sent: bool
    sales_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DealListResponse(BaseModel):
    deals: List[DealResponse]
    total: int
