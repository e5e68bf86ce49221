"""
Tests for the mailbox poller.
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from po_pipeline.exceptions import MailboxAuthError, MailProviderError, ReconnectRequiredError
from po_pipeline.integrations.mail import MailAttachment, MailClient, MailMessage
from po_pipeline.integrations.oauth import OAuthTokenRefresher
from po_pipeline.notifications import NotificationService
from po_pipeline.poller import MailboxPoller
from po_pipeline.schemas.records import (
    EmailAccount,
    MailProvider,
    NotificationType,
    ProcessingStage,
    StageStatus,
)


class FakeIntake:
    """Records what the poller hands to intake."""

    def __init__(self):
        self.calls = []

    async def process_email(self, account, message, attachments):
        self.calls.append((account.email, message.message_id, [a.filename for a in attachments]))
        return ["po"]


class FakeMailClient(MailClient):
    """
    Scripted mailbox. ``behaviour`` maps an access token to either a list of
    message ids or an exception to raise when listing. Messages named
    ``sticky*`` can never be marked read.
    """

    def __init__(self, behaviour, marked, transport=None):
        super().__init__(transport=transport)
        self.behaviour = behaviour
        self.marked = marked

    async def list_candidate_messages(self, account, since):
        outcome = self.behaviour[account.credentials.get("access_token")]
        if isinstance(outcome, Exception):
            raise outcome
        return [
            MailMessage(message_id=message_id, subject="PO", has_attachments=True, attachment_names=["po.pdf"])
            for message_id in outcome
        ]

    async def get_attachments(self, account, message):
        if message.message_id == "flaky":
            raise MailProviderError("attachment download failed", status_code=500)
        return [MailAttachment(filename="po.pdf", content_type="application/pdf", data=b"%PDF")]

    async def mark_processed(self, account, message):
        if message.message_id.startswith("sticky"):
            raise MailProviderError("could not mark message read", status_code=500)
        self.marked.append(message.message_id)


def gmail_account(tenant_id, email, token, refresh_token="refresh-1"):
    return EmailAccount(
        tenant_id=tenant_id,
        provider=MailProvider.GMAIL,
        email=email,
        credentials={"access_token": token, "refresh_token": refresh_token},
    )


def build_poller(storage, behaviour, marked=None, token_transport=None):
    marked = [] if marked is None else marked
    intake = FakeIntake()

    def factory(provider, transport=None):
        return FakeMailClient(behaviour, marked, transport=transport)

    poller = MailboxPoller(
        storage,
        intake,
        OAuthTokenRefresher(storage, transport=token_transport),
        NotificationService(storage),
        interval_seconds=0.01,
        initial_delay_seconds=0,
        mail_client_factory=factory,
    )
    return poller, intake, marked


@pytest.mark.asyncio
async def test_poll_processes_every_active_account(storage):
    await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "tok-a"))
    await storage.create_email_account(gmail_account("tenant-2", "b@two.com", "tok-b"))
    inactive = gmail_account("tenant-2", "c@two.com", "tok-c")
    inactive.is_active = False
    await storage.create_email_account(inactive)

    poller, intake, marked = build_poller(storage, {"tok-a": ["m1", "m2"], "tok-b": ["m3"]})
    stats = await poller.poll_once()

    assert stats == {"tenants": 2, "accounts": 2, "messages": 3, "purchase_orders": 3, "failed_accounts": 0}
    assert sorted(marked) == ["m1", "m2", "m3"]
    assert ("b@two.com", "m3", ["po.pdf"]) in intake.calls

    for account in await storage.list_active_email_accounts():
        assert account.last_checked is not None


@pytest.mark.asyncio
async def test_one_failing_account_does_not_block_others(storage):
    broken = await storage.create_email_account(gmail_account("tenant-1", "broken@one.com", "tok-x"))
    await storage.create_email_account(gmail_account("tenant-1", "ok@one.com", "tok-ok"))

    behaviour = {"tok-x": MailProviderError("Gmail message search failed (HTTP 500)", status_code=500), "tok-ok": ["m1"]}
    poller, intake, marked = build_poller(storage, behaviour)
    stats = await poller.poll_once()

    assert stats["failed_accounts"] == 1
    assert marked == ["m1"]

    (entry,) = await storage.list_processing_logs(tenant_id="tenant-1")
    assert entry.stage == ProcessingStage.EMAIL_DETECTION
    assert entry.status == StageStatus.FAILED
    assert entry.details["account_id"] == broken.id
    assert entry.details["status_code"] == 500

    stored = await storage.get_email_account(broken.id)
    assert stored.last_checked is None
    # Transient failures are reported but do not ask the user to reconnect
    (notification,) = await storage.get_notifications("tenant-1")
    assert notification.type == NotificationType.FAILURE
    assert notification.title == "Email Check Failed"
    assert notification.related_entity == broken.id


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_retried(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "stale"))
    token_requests = []

    def token_handler(request):
        token_requests.append(request)
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    behaviour = {"stale": MailboxAuthError("expired", status_code=401), "fresh": ["m1"]}
    poller, intake, marked = build_poller(storage, behaviour, token_transport=httpx.MockTransport(token_handler))
    result = await poller.process_account(account)

    assert result == {"success": True, "messages": 1, "purchase_orders": 1}
    assert len(token_requests) == 1
    assert marked == ["m1"]

    stored = await storage.get_email_account(account.id)
    assert stored.credentials["access_token"] == "fresh"
    assert stored.credentials["refresh_token"] == "refresh-1"
    assert stored.last_checked is not None


@pytest.mark.asyncio
async def test_second_auth_failure_requires_reconnect(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "stale"))
    token_transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"access_token": "fresh"}))

    behaviour = {
        "stale": MailboxAuthError("expired", status_code=401),
        "fresh": MailboxAuthError("still rejected", status_code=401),
    }
    poller, _, _ = build_poller(storage, behaviour, token_transport=token_transport)
    result = await poller.process_account(account)

    assert result["success"] is False
    (notification,) = await storage.get_notifications("tenant-1")
    assert notification.type == NotificationType.WARNING
    assert notification.title == "Email Account Needs Reconnection"
    assert notification.related_entity == account.id


@pytest.mark.asyncio
async def test_forbidden_requires_reconnect_without_refresh(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "tok"))
    token_requests = []

    def token_handler(request):
        token_requests.append(request)
        return httpx.Response(200, json={"access_token": "fresh"})

    behaviour = {"tok": ReconnectRequiredError("Gmail message search failed (HTTP 403)", status_code=403)}
    poller, _, _ = build_poller(storage, behaviour, token_transport=httpx.MockTransport(token_handler))
    await poller.process_account(account)

    assert token_requests == []
    (entry,) = await storage.list_processing_logs(tenant_id="tenant-1")
    assert entry.details["status_code"] == 403
    (notification,) = await storage.get_notifications("tenant-1")
    assert notification.type == NotificationType.WARNING


@pytest.mark.asyncio
async def test_refresh_rejected_requires_reconnect(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "stale"))
    token_transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

    poller, _, _ = build_poller(
        storage, {"stale": MailboxAuthError("expired", status_code=401)}, token_transport=token_transport
    )
    result = await poller.process_account(account)

    assert result["success"] is False
    assert len(await storage.get_notifications("tenant-1")) == 1


@pytest.mark.asyncio
async def test_message_level_provider_error_skips_only_that_message(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "tok"))
    poller, intake, marked = build_poller(storage, {"tok": ["flaky", "m2"]})

    result = await poller.process_account(account)

    assert result == {"success": True, "messages": 1, "purchase_orders": 1}
    # The flaky message stays unread for the next tick
    assert marked == ["m2"]


@pytest.mark.asyncio
async def test_message_that_cannot_be_marked_is_not_processed_twice(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "tok"))
    poller, intake, marked = build_poller(storage, {"tok": ["sticky-1"]})

    first = await poller.poll_once()
    second = await poller.poll_once()

    assert intake.calls == [("a@one.com", "sticky-1", ["po.pdf"])]
    assert first["messages"] == 1 and first["purchase_orders"] == 1
    assert second["messages"] == 0 and second["purchase_orders"] == 0
    assert marked == []
    assert await storage.is_message_processed(account.id, "sticky-1")


@pytest.mark.asyncio
async def test_reconnect_required_account_is_paused(storage):
    account = await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "tok"))
    behaviour = {"tok": ReconnectRequiredError("Gmail message search failed (HTTP 403)", status_code=403)}
    poller, _, _ = build_poller(storage, behaviour)

    first = await poller.poll_once()
    second = await poller.poll_once()

    assert first["failed_accounts"] == 1
    assert second["accounts"] == 0
    assert len(await storage.get_notifications("tenant-1")) == 1
    assert (await storage.get_email_account(account.id)).needs_reconnect is True
    assert await storage.list_active_email_accounts() == []


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed_before_polling(storage):
    account = gmail_account("tenant-1", "a@one.com", "stale")
    account.credentials["expires_at"] = (datetime.utcnow() + timedelta(seconds=30)).isoformat()
    account = await storage.create_email_account(account)
    token_requests = []

    def token_handler(request):
        token_requests.append(request)
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    # The stale token would be rejected; it must never be used
    behaviour = {"stale": MailboxAuthError("expired", status_code=401), "fresh": ["m1"]}
    poller, intake, _ = build_poller(storage, behaviour, token_transport=httpx.MockTransport(token_handler))
    result = await poller.process_account(account)

    assert result == {"success": True, "messages": 1, "purchase_orders": 1}
    assert len(token_requests) == 1
    assert intake.calls == [("a@one.com", "m1", ["po.pdf"])]


@pytest.mark.asyncio
async def test_start_and_stop(storage):
    await storage.create_email_account(gmail_account("tenant-1", "a@one.com", "tok"))
    poller, intake, _ = build_poller(storage, {"tok": []})

    poller.start()
    assert poller.is_running
    for _ in range(100):
        if (await storage.list_active_email_accounts())[0].last_checked is not None:
            break
        await asyncio.sleep(0.01)

    await poller.stop()
    assert not poller.is_running
    assert (await storage.list_active_email_accounts())[0].last_checked is not None
