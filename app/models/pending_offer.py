import uuid
from datetime import datetime
from sqlalchemy import String, Text, Float, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base, utcnow


class PendingOffer(Base):
    """A drafted price proposal awaiting human approval."""

    __tablename__ = "pending_offers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    deal_id: Mapped[str] = mapped_column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    lead_id: Mapped[str] = mapped_column(String(36), ForeignKey("leads.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    # Offer fields, editable before approval
    offer_product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    offer_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    offer_unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    offer_tax_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.24)
    offer_subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    offer_tax_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    offer_total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    offer_summary: Mapped[str] = mapped_column(Text, nullable=True)
    # Email fields, editable before approval
    reply_subject: Mapped[str] = mapped_column(String(500), nullable=False)
    reply_body: Mapped[str] = mapped_column(Text, nullable=False)
    # Threading data
    in_reply_to: Mapped[str] = mapped_column(String(500), nullable=True)
    references: Mapped[str] = mapped_column(Text, nullable=True)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    resolved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    deal = relationship("Deal", back_populates="pending_offers")

    def __repr__(self):
        return f"<PendingOffer(id={self.id}, deal_id={self.deal_id}, action={self.action}, status={self.status})>"
