"""Outbound/inbound mail.

``GmailTransport`` talks to the Gmail REST API with httpx using a stored
refresh token. ``LogOnlyTransport`` is used when no Gmail credentials are
configured: messages are recorded (status ``logged``) but never leave the
process.
"""
import base64
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from email.message import EmailMessage as MimeMessage
from email.utils import make_msgid, parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.models.email import EmailMessage

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1"


class Attachment(BaseModel):
    filename: str
    content: bytes
    mime_type: str = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class ThreadRefs(BaseModel):
    """Headers that keep a reply in the counterpart's thread."""
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    thread_id: Optional[str] = None


class SendResult(BaseModel):
    sent: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    # True when the transport only recorded the message
    logged: bool = False


class InboundMessage(BaseModel):
    message_id: str
    from_email: str
    from_name: str = ""
    subject: str = ""
    body: str = ""
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    thread_id: Optional[str] = None
    received_at: Optional[datetime] = None


class MailTransport(ABC):
    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        thread_refs: Optional[ThreadRefs] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> SendResult:
        ...

    @abstractmethod
    async def fetch_reply(self, deal_context: Dict[str, Any]) -> Optional[InboundMessage]:
        """Latest message from the deal's counterpart, or None.

        ``deal_context`` carries at least ``contact_email`` and optionally
        ``since`` (datetime of the deal's creation).
        """


async def refresh_access_token(refresh_token: str) -> str:
    """Use refresh token to get a new access token."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            TOKEN_URL,
            data={
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        response.raise_for_status()
        return response.json()["access_token"]


class GmailTransport(MailTransport):
    """Gmail API transport authenticated by a long-lived refresh token."""

    def __init__(self, sender: str, refresh_token: str):
        self.sender = sender
        self.refresh_token = refresh_token

    async def _headers(self) -> Dict[str, str]:
        access_token = await refresh_access_token(self.refresh_token)
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    def _build_raw(self, to, subject, body, thread_refs, attachments) -> tuple:
        msg = MimeMessage()
        message_id = make_msgid(domain=self.sender.split("@")[-1] or None)
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = message_id
        if thread_refs and thread_refs.in_reply_to:
            msg["In-Reply-To"] = thread_refs.in_reply_to
            msg["References"] = thread_refs.references or thread_refs.in_reply_to
        msg.set_content(body)
        for att in attachments or []:
            maintype, _, subtype = att.mime_type.partition("/")
            msg.add_attachment(att.content, maintype=maintype, subtype=subtype, filename=att.filename)
        encoded = base64.urlsafe_b64encode(msg.as_bytes()).decode()
        return encoded, message_id

    async def send(self, to, subject, body, thread_refs=None, attachments=None) -> SendResult:
        raw, message_id = self._build_raw(to, subject, body, thread_refs, attachments)
        payload: Dict[str, Any] = {"raw": raw}
        if thread_refs and thread_refs.thread_id:
            payload["threadId"] = thread_refs.thread_id

        try:
            headers = await self._headers()
            async with httpx.AsyncClient() as client:
                resp = await client.post(f"{GMAIL_BASE}/users/me/messages/send", headers=headers, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Gmail send to %s failed: %s", to, e)
            return SendResult(sent=False, error=str(e))

        logger.info("Gmail sent '%s' to %s (id=%s)", subject, to, message_id)
        return SendResult(sent=True, message_id=message_id)

    async def fetch_reply(self, deal_context: Dict[str, Any]) -> Optional[InboundMessage]:
        contact = deal_context.get("contact_email")
        if not contact:
            return None
        query = f"from:{contact} newer_than:30d"

        headers = await self._headers()
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{GMAIL_BASE}/users/me/messages",
                headers=headers,
                params={"q": query, "maxResults": 1},
            )
            resp.raise_for_status()
            messages = resp.json().get("messages", [])
            if not messages:
                return None

            msg_resp = await client.get(
                f"{GMAIL_BASE}/users/me/messages/{messages[0]['id']}",
                headers=headers,
                params={"format": "full"},
            )
            msg_resp.raise_for_status()
            msg = msg_resp.json()

        inbound = self._parse_message(msg)
        since = deal_context.get("since")
        if since and inbound.received_at and inbound.received_at < since:
            return None
        return inbound

    def _parse_message(self, msg: dict) -> InboundMessage:
        """Parse a Gmail full-format message into an InboundMessage."""
        payload = msg.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        sender = headers.get("from", "")
        from_email = sender.split("<")[-1].rstrip(">").strip() if "<" in sender else sender.strip()

        received_at = None
        if headers.get("date"):
            try:
                received_at = parsedate_to_datetime(headers["date"]).replace(tzinfo=None)
            except (TypeError, ValueError):
                logger.debug("Unparseable Date header: %s", headers["date"])

        return InboundMessage(
            message_id=headers.get("message-id", msg["id"]),
            from_email=from_email,
            from_name=sender.split("<")[0].strip().strip('"'),
            subject=headers.get("subject", "(No subject)"),
            body=self._extract_body(payload) or msg.get("snippet", ""),
            in_reply_to=headers.get("in-reply-to"),
            references=headers.get("references"),
            thread_id=msg.get("threadId"),
            received_at=received_at,
        )

    def _extract_body(self, payload: dict) -> str:
        """Extract plain text body from Gmail payload."""
        if payload.get("mimeType") == "text/plain" and payload.get("body", {}).get("data"):
            return base64.urlsafe_b64decode(payload["body"]["data"]).decode("utf-8", errors="replace")

        for part in payload.get("parts", []):
            result = self._extract_body(part)
            if result:
                return result
        return ""


class LogOnlyTransport(MailTransport):
    """Records outbound mail in memory instead of sending it."""

    def __init__(self):
        self.outbox: List[Dict[str, Any]] = []
        self.inbox: Dict[str, InboundMessage] = {}

    async def send(self, to, subject, body, thread_refs=None, attachments=None) -> SendResult:
        message_id = f"<{uuid.uuid4()}@agentflow.local>"
        self.outbox.append({
            "to": to,
            "subject": subject,
            "body": body,
            "thread_refs": thread_refs,
            "attachments": [a.filename for a in attachments or []],
            "message_id": message_id,
        })
        logger.info("[mail not configured] would send '%s' to %s", subject, to)
        return SendResult(sent=True, message_id=message_id, logged=True)

    async def fetch_reply(self, deal_context: Dict[str, Any]) -> Optional[InboundMessage]:
        return self.inbox.get(deal_context.get("contact_email") or "")


def build_transport() -> MailTransport:
    if settings.GMAIL_REFRESH_TOKEN and settings.GMAIL_SENDER:
        return GmailTransport(settings.GMAIL_SENDER, settings.GMAIL_REFRESH_TOKEN)
    logger.warning("Gmail credentials not configured: outbound mail will only be logged")
    return LogOnlyTransport()


class Mailer:
    """Sends through a transport and records every attempt as an EmailMessage row."""

    def __init__(self, transport: MailTransport, session_factory: Callable[[], Session] = SessionLocal):
        self.transport = transport
        self.session_factory = session_factory

    async def send(
        self,
        *,
        company_id: str,
        email_type: str,
        to: str,
        subject: str,
        body: str,
        to_name: Optional[str] = None,
        deal_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        thread_refs: Optional[ThreadRefs] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> SendResult:
        result = await self.transport.send(to, subject, body, thread_refs=thread_refs, attachments=attachments)

        if not result.sent:
            status = "failed"
        elif result.logged:
            status = "logged"
        else:
            status = "sent"

        db = self.session_factory()
        try:
            db.add(EmailMessage(
                company_id=company_id,
                deal_id=deal_id,
                lead_id=lead_id,
                direction="outbound",
                email_type=email_type,
                counterpart_email=to,
                counterpart_name=to_name,
                subject=subject,
                body=body,
                message_id=result.message_id,
                in_reply_to=thread_refs.in_reply_to if thread_refs else None,
                references=thread_refs.references if thread_refs else None,
                status=status,
                error_message=result.error,
            ))
            db.commit()
        finally:
            db.close()
        return result

    async def fetch_reply(self, deal_context: Dict[str, Any]) -> Optional[InboundMessage]:
        return await self.transport.fetch_reply(deal_context)


def thread_refs_for(inbound: Optional[InboundMessage]) -> Optional[ThreadRefs]:
    if inbound is None:
        return None
    references = " ".join(r for r in (inbound.references, inbound.message_id) if r)
    return ThreadRefs(in_reply_to=inbound.message_id, references=references, thread_id=inbound.thread_id)
