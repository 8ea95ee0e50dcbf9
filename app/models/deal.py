import uuid
from datetime import datetime
from sqlalchemy import String, Text, Float, Integer, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base, utcnow


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    lead_id: Mapped[str] = mapped_column(String(36), ForeignKey("leads.id"), nullable=False)
    # Pipeline state, see app.services.deal_state
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="contacted", index=True)
    # Pricing: only ever written together through deal_state.apply_pricing
    product_name: Mapped[str] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.24)
    tax_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Lifecycle counters
    negotiation_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    follow_up_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    satisfaction_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sales_notes: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    closed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    # Relationships
    lead = relationship("Lead", back_populates="deals")
    tasks = relationship("Task", back_populates="deal", cascade="all, delete-orphan")
    pending_offers = relationship("PendingOffer", back_populates="deal", cascade="all, delete-orphan")
    invoice = relationship("Invoice", back_populates="deal", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Deal(id={self.id}, status={self.status}, round={self.negotiation_round})>"
