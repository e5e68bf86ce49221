"""
Mailbox provider clients.

One client per provider (Gmail REST API, Microsoft Graph, generic IMAP)
behind the same three operations: list candidate messages, fetch their
attachments, and mark a message processed so the next poll skips it.
"""

import asyncio
import base64
import contextlib
import imaplib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel, Field

from po_pipeline.agents.email_classifier import matches_po_keywords
from po_pipeline.config import get_config
from po_pipeline.exceptions import (
    MailProviderError,
    MailboxAuthError,
    ReconnectRequiredError,
    UnsupportedProviderError,
)
from po_pipeline.schemas.records import EmailAccount, MailProvider
from po_pipeline.utils import truncate
from po_pipeline.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()

GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
GRAPH_API = "https://graph.microsoft.com/v1.0/me"


class MailAttachment(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    data: bytes


class MailMessage(BaseModel):
    """Provider-neutral view of one email."""
    message_id: str
    subject: str = ""
    sender: str = ""
    received_at: Optional[datetime] = None
    has_attachments: bool = False
    attachment_names: List[str] = Field(default_factory=list)
    # Provider bookkeeping needed to fetch attachments later
    provider_data: Dict[str, Any] = Field(default_factory=dict)
    raw: Optional[bytes] = None


def is_candidate(message: MailMessage) -> bool:
    """Over-select: anything with attachments or a PO-ish subject/sender."""
    return message.has_attachments or matches_po_keywords(message.subject, message.sender)


def raise_for_provider_status(response: httpx.Response, action: str) -> None:
    """Map provider HTTP failures onto the pipeline's mail exceptions."""
    if response.is_success:
        return
    detail = f"{action} failed (HTTP {response.status_code}): {truncate(response.text, 200)}"
    if response.status_code == 401:
        raise MailboxAuthError(detail, status_code=401)
    if response.status_code == 403:
        raise ReconnectRequiredError(detail, status_code=403)
    raise MailProviderError(detail, status_code=response.status_code)


class MailClient(ABC):
    """Contract shared by every mailbox provider."""

    provider: MailProvider

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: Optional[float] = None):
        self.transport = transport
        self.timeout = timeout or config.MAIL_TIMEOUT_SECONDS

    def _client(self, account: EmailAccount) -> httpx.AsyncClient:
        token = account.credentials.get("access_token")
        if not token:
            raise MailboxAuthError(f"No access token stored for {account.email}", status_code=401)
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {token}"},
        )

    @abstractmethod
    async def list_candidate_messages(self, account: EmailAccount, since: datetime) -> List[MailMessage]:
        """Unread messages received after ``since`` that may carry a purchase order."""

    @abstractmethod
    async def get_attachments(self, account: EmailAccount, message: MailMessage) -> List[MailAttachment]:
        """Download the message's file attachments."""

    @abstractmethod
    async def mark_processed(self, account: EmailAccount, message: MailMessage) -> None:
        """Mark the message read/seen on the provider."""


class GmailClient(MailClient):
    """Gmail REST API."""

    provider = MailProvider.GMAIL

    @staticmethod
    def _attachment_parts(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        parts = []
        stack = [payload or {}]
        while stack:
            part = stack.pop()
            if part.get("filename") and (part.get("body") or {}).get("attachmentId"):
                parts.append({
                    "filename": part["filename"],
                    "mime_type": part.get("mimeType") or "application/octet-stream",
                    "attachment_id": part["body"]["attachmentId"],
                })
            stack.extend(reversed(part.get("parts") or []))
        return parts

    async def list_candidate_messages(self, account: EmailAccount, since: datetime) -> List[MailMessage]:
        query = (
            f"after:{int(since.timestamp())} is:unread "
            '(has:attachment OR subject:PO OR subject:"purchase order" OR subject:order)'
        )
        async with self._client(account) as client:
            response = await client.get(
                f"{GMAIL_API}/messages",
                params={"q": query, "maxResults": config.POLL_MAX_MESSAGES},
            )
            raise_for_provider_status(response, "Gmail message search")

            messages = []
            for ref in response.json().get("messages", []):
                detail = await client.get(f"{GMAIL_API}/messages/{ref['id']}", params={"format": "full"})
                raise_for_provider_status(detail, "Gmail message fetch")
                body = detail.json()

                headers = {h["name"].lower(): h.get("value", "") for h in body.get("payload", {}).get("headers", [])}
                parts = self._attachment_parts(body.get("payload", {}))
                received_at = None
                if body.get("internalDate"):
                    received_at = datetime.fromtimestamp(int(body["internalDate"]) / 1000, tz=timezone.utc)

                message = MailMessage(
                    message_id=ref["id"],
                    subject=headers.get("subject", ""),
                    sender=headers.get("from", ""),
                    received_at=received_at,
                    has_attachments=bool(parts),
                    attachment_names=[p["filename"] for p in parts],
                    provider_data={"parts": parts},
                )
                if is_candidate(message):
                    messages.append(message)

        logger.info(f"Gmail: {len(messages)} candidate messages for {account.email}")
        return messages

    async def get_attachments(self, account: EmailAccount, message: MailMessage) -> List[MailAttachment]:
        attachments = []
        async with self._client(account) as client:
            for part in message.provider_data.get("parts", []):
                response = await client.get(
                    f"{GMAIL_API}/messages/{message.message_id}/attachments/{part['attachment_id']}"
                )
                raise_for_provider_status(response, "Gmail attachment fetch")
                data = response.json().get("data", "")
                attachments.append(MailAttachment(
                    filename=part["filename"],
                    content_type=part["mime_type"],
                    data=base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)),
                ))
        return attachments

    async def mark_processed(self, account: EmailAccount, message: MailMessage) -> None:
        async with self._client(account) as client:
            response = await client.post(
                f"{GMAIL_API}/messages/{message.message_id}/modify",
                json={"removeLabelIds": ["UNREAD"]},
            )
            raise_for_provider_status(response, "Gmail mark read")


class OutlookClient(MailClient):
    """Microsoft Graph mail API."""

    provider = MailProvider.OUTLOOK

    async def list_candidate_messages(self, account: EmailAccount, since: datetime) -> List[MailMessage]:
        since_iso = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        async with self._client(account) as client:
            response = await client.get(
                f"{GRAPH_API}/messages",
                params={
                    "$filter": f"isRead eq false and receivedDateTime ge {since_iso}",
                    "$select": "id,subject,from,receivedDateTime,hasAttachments",
                    "$top": config.POLL_MAX_MESSAGES,
                },
            )
            raise_for_provider_status(response, "Graph message search")

        messages = []
        for item in response.json().get("value", []):
            received_at = None
            if item.get("receivedDateTime"):
                received_at = datetime.fromisoformat(item["receivedDateTime"].replace("Z", "+00:00"))
            message = MailMessage(
                message_id=item["id"],
                subject=item.get("subject") or "",
                sender=((item.get("from") or {}).get("emailAddress") or {}).get("address", ""),
                received_at=received_at,
                has_attachments=bool(item.get("hasAttachments")),
            )
            if is_candidate(message):
                messages.append(message)

        logger.info(f"Outlook: {len(messages)} candidate messages for {account.email}")
        return messages

    async def get_attachments(self, account: EmailAccount, message: MailMessage) -> List[MailAttachment]:
        async with self._client(account) as client:
            response = await client.get(f"{GRAPH_API}/messages/{message.message_id}/attachments")
            raise_for_provider_status(response, "Graph attachment fetch")

        attachments = []
        for item in response.json().get("value", []):
            # Item and reference attachments carry no bytes
            if item.get("@odata.type") != "#microsoft.graph.fileAttachment":
                continue
            attachments.append(MailAttachment(
                filename=item.get("name") or "attachment",
                content_type=item.get("contentType") or "application/octet-stream",
                data=base64.b64decode(item.get("contentBytes") or ""),
            ))
        message.attachment_names = [a.filename for a in attachments]
        return attachments

    async def mark_processed(self, account: EmailAccount, message: MailMessage) -> None:
        async with self._client(account) as client:
            response = await client.patch(f"{GRAPH_API}/messages/{message.message_id}", json={"isRead": True})
            raise_for_provider_status(response, "Graph mark read")


class ImapClient(MailClient):
    """Generic IMAP; blocking imaplib calls run in a worker thread."""

    provider = MailProvider.IMAP

    def _connect(self, account: EmailAccount) -> imaplib.IMAP4:
        creds = account.credentials
        host = creds.get("host")
        if not host:
            raise ReconnectRequiredError(f"IMAP host not configured for {account.email}")
        port = int(creds.get("port", 993))
        use_tls = str(creds.get("tls", "true")).lower() != "false"

        try:
            if use_tls:
                connection = imaplib.IMAP4_SSL(host, port, timeout=self.timeout)
            else:
                connection = imaplib.IMAP4(host, port, timeout=self.timeout)
        except OSError as e:
            raise MailProviderError(f"IMAP connection to {host}:{port} failed: {e}")

        try:
            connection.login(creds.get("user") or account.email, creds.get("password", ""))
        except imaplib.IMAP4.error as e:
            with contextlib.suppress(Exception):
                connection.logout()
            # Passwords cannot be refreshed; a user has to fix the account
            raise ReconnectRequiredError(f"IMAP login failed for {account.email}: {e}")

        status, _ = connection.select(creds.get("folder", "INBOX"))
        if status != "OK":
            connection.logout()
            raise MailProviderError(f"Unable to select IMAP folder for {account.email}")
        return connection

    @staticmethod
    def _file_parts(parsed: EmailMessage):
        for part in parsed.walk():
            if part.is_multipart():
                continue
            if part.get_filename() and part.get_content_disposition() in ("attachment", "inline"):
                yield part

    def _list_sync(self, account: EmailAccount, since: datetime) -> List[MailMessage]:
        connection = self._connect(account)
        try:
            status, data = connection.uid("search", None, "UNSEEN", "SINCE", since.strftime("%d-%b-%Y"))
            if status != "OK":
                raise MailProviderError(f"IMAP search failed for {account.email}")
            uids = data[0].split()[-config.POLL_MAX_MESSAGES:]

            messages = []
            for uid in uids:
                # PEEK keeps the message unseen until it is handled
                status, msg_data = connection.uid("fetch", uid, "(BODY.PEEK[])")
                if status != "OK":
                    continue
                raw = next((part[1] for part in msg_data if isinstance(part, tuple)), None)
                if raw is None:
                    continue
                parsed = BytesParser(policy=policy.default).parsebytes(raw)

                received_at = None
                if parsed.get("Date"):
                    with contextlib.suppress(TypeError, ValueError):
                        received_at = parsedate_to_datetime(parsed["Date"])
                if received_at and received_at.tzinfo and since.tzinfo and received_at < since:
                    continue

                names = [part.get_filename() for part in self._file_parts(parsed)]
                message = MailMessage(
                    message_id=uid.decode() if isinstance(uid, bytes) else str(uid),
                    subject=str(parsed.get("Subject", "")),
                    sender=str(parsed.get("From", "")),
                    received_at=received_at,
                    has_attachments=bool(names),
                    attachment_names=names,
                    raw=raw,
                )
                if is_candidate(message):
                    messages.append(message)
            return messages
        finally:
            with contextlib.suppress(Exception):
                connection.logout()

    def _mark_sync(self, account: EmailAccount, message: MailMessage) -> None:
        connection = self._connect(account)
        try:
            status, _ = connection.uid("store", message.message_id, "+FLAGS", "(\\Seen)")
            if status != "OK":
                raise MailProviderError(f"IMAP flag update failed for message {message.message_id}")
        finally:
            with contextlib.suppress(Exception):
                connection.logout()

    async def list_candidate_messages(self, account: EmailAccount, since: datetime) -> List[MailMessage]:
        messages = await asyncio.to_thread(self._list_sync, account, since)
        logger.info(f"IMAP: {len(messages)} candidate messages for {account.email}")
        return messages

    async def get_attachments(self, account: EmailAccount, message: MailMessage) -> List[MailAttachment]:
        if not message.raw:
            return []
        parsed = BytesParser(policy=policy.default).parsebytes(message.raw)
        return [
            MailAttachment(
                filename=part.get_filename(),
                content_type=part.get_content_type(),
                data=part.get_payload(decode=True) or b"",
            )
            for part in self._file_parts(parsed)
        ]

    async def mark_processed(self, account: EmailAccount, message: MailMessage) -> None:
        await asyncio.to_thread(self._mark_sync, account, message)


MAIL_CLIENTS: Dict[MailProvider, Type[MailClient]] = {
    MailProvider.GMAIL: GmailClient,
    MailProvider.OUTLOOK: OutlookClient,
    MailProvider.IMAP: ImapClient,
}


def get_mail_client(provider: MailProvider, transport: Optional[httpx.AsyncBaseTransport] = None) -> MailClient:
    try:
        client_cls = MAIL_CLIENTS[MailProvider(provider)]
    except (KeyError, ValueError):
        raise UnsupportedProviderError(f"Unsupported mail provider: {provider}")
    return client_cls(transport=transport)
