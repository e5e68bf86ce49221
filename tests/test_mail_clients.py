"""
Tests for mailbox provider clients.
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage

import httpx
import pytest

from po_pipeline.exceptions import (
    MailboxAuthError,
    MailProviderError,
    ReconnectRequiredError,
    UnsupportedProviderError,
)
from po_pipeline.integrations.mail import (
    GmailClient,
    ImapClient,
    MailMessage,
    OutlookClient,
    get_mail_client,
    is_candidate,
    raise_for_provider_status,
)
from po_pipeline.schemas.records import EmailAccount, MailProvider


SINCE = datetime(2026, 3, 1, tzinfo=timezone.utc)


def account(provider, **credentials):
    return EmailAccount(
        tenant_id="tenant-1",
        provider=provider,
        email="po@buyer.com",
        credentials=credentials or {"access_token": "tok"},
    )


def gmail_message(message_id, subject, with_attachment=True):
    parts = []
    if with_attachment:
        parts.append({
            "mimeType": "application/pdf",
            "filename": "po.pdf",
            "body": {"attachmentId": f"att-{message_id}"},
        })
    return {
        "id": message_id,
        "internalDate": "1772352000000",
        "payload": {
            "headers": [{"name": "Subject", "value": subject}, {"name": "From", "value": "sales@acme.com"}],
            "parts": [{"mimeType": "text/plain", "body": {"size": 10}}, *parts],
        },
    }


class TestGmailClient:

    @pytest.mark.asyncio
    async def test_list_fetch_and_mark(self):
        requests = []
        messages = {
            "m1": gmail_message("m1", "Purchase Order 4521"),
            "m2": gmail_message("m2", "Lunch?", with_attachment=False),
        }
        pdf_bytes = b"%PDF-1.4 fake"

        def handler(request):
            requests.append(request)
            path = request.url.path
            if path.endswith("/messages"):
                return httpx.Response(200, json={"messages": [{"id": "m1"}, {"id": "m2"}]})
            if "/attachments/" in path:
                data = base64.urlsafe_b64encode(pdf_bytes).decode().rstrip("=")
                return httpx.Response(200, json={"data": data})
            if path.endswith("/modify"):
                return httpx.Response(200, json={})
            return httpx.Response(200, json=messages[path.rsplit("/", 1)[-1]])

        client = GmailClient(transport=httpx.MockTransport(handler))
        mailbox = account(MailProvider.GMAIL)

        found = await client.list_candidate_messages(mailbox, SINCE)
        assert [m.message_id for m in found] == ["m1"]
        assert found[0].subject == "Purchase Order 4521"
        assert found[0].attachment_names == ["po.pdf"]
        assert found[0].received_at.tzinfo is not None

        search = requests[0]
        assert search.headers["Authorization"] == "Bearer tok"
        assert "is:unread" in search.url.params["q"]
        assert f"after:{int(SINCE.timestamp())}" in search.url.params["q"]

        attachments = await client.get_attachments(mailbox, found[0])
        assert attachments[0].filename == "po.pdf"
        assert attachments[0].content_type == "application/pdf"
        assert attachments[0].data == pdf_bytes

        await client.mark_processed(mailbox, found[0])
        modify = requests[-1]
        assert modify.method == "POST"
        assert json.loads(modify.content) == {"removeLabelIds": ["UNREAD"]}

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        client = GmailClient(transport=httpx.MockTransport(lambda r: httpx.Response(401, text="expired")))
        with pytest.raises(MailboxAuthError):
            await client.list_candidate_messages(account(MailProvider.GMAIL), SINCE)

    @pytest.mark.asyncio
    async def test_missing_token_is_an_auth_error(self):
        client = GmailClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        with pytest.raises(MailboxAuthError):
            await client.list_candidate_messages(account(MailProvider.GMAIL, refresh_token="r"), SINCE)


class TestOutlookClient:

    @pytest.mark.asyncio
    async def test_list_fetch_and_mark(self):
        requests = []
        content = b"image bytes"

        def handler(request):
            requests.append(request)
            path = request.url.path
            if path.endswith("/messages"):
                return httpx.Response(200, json={"value": [
                    {
                        "id": "o1",
                        "subject": "Order confirmation",
                        "from": {"emailAddress": {"address": "sales@acme.com"}},
                        "receivedDateTime": "2026-03-02T10:00:00Z",
                        "hasAttachments": True,
                    },
                    {"id": "o2", "subject": "Hi", "from": {"emailAddress": {"address": "x@y.com"}}, "hasAttachments": False},
                ]})
            if path.endswith("/attachments"):
                return httpx.Response(200, json={"value": [
                    {
                        "@odata.type": "#microsoft.graph.fileAttachment",
                        "name": "scan.png",
                        "contentType": "image/png",
                        "contentBytes": base64.b64encode(content).decode(),
                    },
                    {"@odata.type": "#microsoft.graph.itemAttachment", "name": "forwarded"},
                ]})
            return httpx.Response(200, json={})

        client = OutlookClient(transport=httpx.MockTransport(handler))
        mailbox = account(MailProvider.OUTLOOK)

        found = await client.list_candidate_messages(mailbox, SINCE)
        assert [m.message_id for m in found] == ["o1"]
        assert found[0].sender == "sales@acme.com"
        assert "isRead eq false" in requests[0].url.params["$filter"]

        attachments = await client.get_attachments(mailbox, found[0])
        assert [a.filename for a in attachments] == ["scan.png"]
        assert attachments[0].data == content

        await client.mark_processed(mailbox, found[0])
        assert requests[-1].method == "PATCH"
        assert json.loads(requests[-1].content) == {"isRead": True}

    @pytest.mark.asyncio
    async def test_forbidden_requires_reconnect(self):
        client = OutlookClient(transport=httpx.MockTransport(lambda r: httpx.Response(403, text="consent revoked")))
        with pytest.raises(ReconnectRequiredError):
            await client.list_candidate_messages(account(MailProvider.OUTLOOK), SINCE)


class TestImapClient:

    @pytest.mark.asyncio
    async def test_attachments_parsed_from_raw_message(self):
        msg = EmailMessage()
        msg["Subject"] = "PO 4521"
        msg["From"] = "sales@acme.com"
        msg.set_content("Please find our order attached.")
        msg.add_attachment(b"%PDF-1.4 fake", maintype="application", subtype="pdf", filename="po.pdf")

        message = MailMessage(message_id="7", subject="PO 4521", raw=msg.as_bytes())
        attachments = await ImapClient().get_attachments(account(MailProvider.IMAP), message)

        assert len(attachments) == 1
        assert attachments[0].filename == "po.pdf"
        assert attachments[0].content_type == "application/pdf"
        assert attachments[0].data == b"%PDF-1.4 fake"

    @pytest.mark.asyncio
    async def test_missing_host_requires_reconnect(self):
        with pytest.raises(ReconnectRequiredError):
            await ImapClient().list_candidate_messages(account(MailProvider.IMAP, user="u", password="p"), SINCE)


def test_raise_for_provider_status():
    request = httpx.Request("GET", "https://example.com")
    raise_for_provider_status(httpx.Response(200, request=request), "fetch")

    with pytest.raises(MailboxAuthError):
        raise_for_provider_status(httpx.Response(401, request=request), "fetch")
    with pytest.raises(ReconnectRequiredError):
        raise_for_provider_status(httpx.Response(403, request=request), "fetch")
    with pytest.raises(MailProviderError) as exc_info:
        raise_for_provider_status(httpx.Response(502, request=request), "fetch")
    assert exc_info.value.status_code == 502


def test_candidate_selection():
    assert is_candidate(MailMessage(message_id="1", has_attachments=True))
    assert is_candidate(MailMessage(message_id="2", subject="Purchase order update"))
    assert not is_candidate(MailMessage(message_id="3", subject="Lunch", sender="friend@example.com"))


def test_unknown_provider():
    with pytest.raises(UnsupportedProviderError):
        get_mail_client("pop3")
    assert isinstance(get_mail_client(MailProvider.IMAP), ImapClient)
