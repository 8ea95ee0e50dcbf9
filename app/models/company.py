import uuid
from datetime import datetime
from sqlalchemy import String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base, utcnow


class Company(Base):
    """Owning organisation. Every pipeline row is scoped by ``company_id``."""

    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website: Mapped[str] = mapped_column(String(255), nullable=True)
    industry: Mapped[str] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    products_services: Mapped[str] = mapped_column(Text, nullable=True)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=True)
    sender_email: Mapped[str] = mapped_column(String(255), nullable=True)
    communication_language: Mapped[str] = mapped_column(String(50), nullable=False, default="English")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    leads = relationship("Lead", back_populates="company")

    def context_block(self) -> str:
        """Company description injected at the top of every agent prompt."""
        lines = [f"COMPANY: {self.name}"]
        if self.industry:
            lines.append(f"Industry: {self.industry}")
        if self.description:
            lines.append(f"About: {self.description}")
        if self.products_services:
            lines.append(f"Products/services: {self.products_services}")
        lines.append(f"Write all customer-facing text in {self.communication_language}.")
        return "\n".join(lines)

    def __repr__(self):
        return f"<Company(id={self.id}, name={self.name})>"
