import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base, utcnow


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_email: Mapped[str] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str] = mapped_column(String(50), nullable=True)
    product_interest: Mapped[str] = mapped_column(String(255), nullable=True)
    company_website: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="new")
    # Enrichment (marketing step)
    industry: Mapped[str] = mapped_column(String(255), nullable=True)
    company_size: Mapped[str] = mapped_column(String(100), nullable=True)
    lead_score: Mapped[str] = mapped_column(String(1), nullable=True)
    # Accumulated by the negotiation step, e.g. {"knows_offering": true, "needs": [...]}
    lead_profile: Mapped[dict] = mapped_column(JSON, nullable=True)
    # Set on clones created when a lost deal is reopened
    source_lead_id: Mapped[str] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    company = relationship("Company", back_populates="leads")
    deals = relationship("Deal", back_populates="lead")

    def __repr__(self):
        return f"<Lead(id={self.id}, company_name={self.company_name}, status={self.status})>"
