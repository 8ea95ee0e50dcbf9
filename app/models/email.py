import uuid
from datetime import datetime
from sqlalchemy import String, Text, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base, utcnow


class EmailMessage(Base):
    """Outbound and inbound mail; inbound ``message_id`` doubles as the dedupe key."""

    __tablename__ = "email_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    deal_id: Mapped[str] = mapped_column(String(36), ForeignKey("deals.id"), nullable=True, index=True)
    lead_id: Mapped[str] = mapped_column(String(36), ForeignKey("leads.id"), nullable=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False, default="outbound")
    email_type: Mapped[str] = mapped_column(String(50), nullable=False)
    counterpart_email: Mapped[str] = mapped_column(String(255), nullable=True)
    counterpart_name: Mapped[str] = mapped_column(String(255), nullable=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    message_id: Mapped[str] = mapped_column(String(500), nullable=True, unique=True)
    in_reply_to: Mapped[str] = mapped_column(String(500), nullable=True)
    references: Mapped[str] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<EmailMessage(id={self.id}, direction={self.direction}, type={self.email_type}, status={self.status})>"
