"""
Mailbox Poller

Long-lived background task owned by the runtime. Every interval it walks
the active email accounts, grouped by tenant and processed one account at
a time, and feeds candidate messages to the intake chain.
"""

import asyncio
import contextlib
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from po_pipeline.config import get_config
from po_pipeline.exceptions import MailProviderError, MailboxAuthError, ReconnectRequiredError
from po_pipeline.intake import EmailIntake
from po_pipeline.integrations.mail import MailClient, MailMessage, get_mail_client
from po_pipeline.integrations.oauth import OAuthTokenRefresher
from po_pipeline.notifications import NotificationService
from po_pipeline.orchestrator import StageLogger
from po_pipeline.schemas.records import EmailAccount, ProcessingStage
from po_pipeline.storage import Storage
from po_pipeline.utils.logging import setup_logging, log_agent_action


logger = setup_logging(__name__)
config = get_config()


class MailboxPoller:
    def __init__(
        self,
        storage: Storage,
        intake: EmailIntake,
        refresher: OAuthTokenRefresher,
        notifications: NotificationService,
        stage_logger: Optional[StageLogger] = None,
        interval_seconds: Optional[float] = None,
        initial_delay_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        mail_client_factory: Callable[..., MailClient] = get_mail_client,
    ):
        self.storage = storage
        self.intake = intake
        self.refresher = refresher
        self.notifications = notifications
        self.stage_logger = stage_logger or StageLogger(storage)
        self.interval_seconds = interval_seconds if interval_seconds is not None else config.POLL_INTERVAL_SECONDS
        self.initial_delay_seconds = (
            initial_delay_seconds if initial_delay_seconds is not None else config.POLL_INITIAL_DELAY_SECONDS
        )
        self.transport = transport
        self.mail_client_factory = mail_client_factory
        self._task: Optional[asyncio.Task] = None

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the polling task on the running event loop."""
        if self.is_running:
            logger.debug("Mailbox poller already running")
            return
        self._task = asyncio.create_task(self._run_loop(), name="mailbox-poller")
        logger.info(
            f"Mailbox poller started (initial delay {self.initial_delay_seconds}s, "
            f"interval {self.interval_seconds}s)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Mailbox poller stopped")

    async def _run_loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                # One bad tick must not kill the loop
                logger.exception(f"Mailbox poll failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    # Polling

    async def poll_once(self) -> Dict[str, int]:
        """Poll every active account once. Returns counters for the tick."""
        accounts = await self.storage.list_active_email_accounts()

        by_tenant: Dict[str, List[EmailAccount]] = OrderedDict()
        for account in accounts:
            by_tenant.setdefault(account.tenant_id, []).append(account)

        stats = {"tenants": len(by_tenant), "accounts": 0, "messages": 0, "purchase_orders": 0, "failed_accounts": 0}
        for tenant_id, tenant_accounts in by_tenant.items():
            logger.debug(f"Polling {len(tenant_accounts)} account(s) for tenant {tenant_id}")
            for account in tenant_accounts:
                result = await self.process_account(account)
                stats["accounts"] += 1
                stats["messages"] += result["messages"]
                stats["purchase_orders"] += result["purchase_orders"]
                if not result["success"]:
                    stats["failed_accounts"] += 1

        log_agent_action(logger, "MailboxPoller", "Poll complete", stats)
        return stats

    async def process_account(self, account: EmailAccount) -> Dict[str, Any]:
        """
        Fetch and process one account's candidate messages.
        Failures are contained here and logged as a failed email_detection stage.
        An account the provider refuses is flagged and skipped by later ticks.
        """
        logger.info(f"Processing emails for {account.email} ({account.provider.value})")
        since = datetime.now(timezone.utc) - timedelta(hours=config.POLL_LOOKBACK_HOURS)

        try:
            account = await self.refresher.ensure_valid(account)
            try:
                messages, purchase_orders = await self._poll_account(account, since)
            except MailboxAuthError as e:
                logger.warning(f"Access token rejected for {account.email}, refreshing: {e}")
                account = await self.refresher.refresh(account)
                try:
                    messages, purchase_orders = await self._poll_account(account, since)
                except MailboxAuthError as retry_error:
                    raise ReconnectRequiredError(
                        f"Access token rejected after refresh: {retry_error}", status_code=401
                    )

            await self.storage.update_email_account(account.id, last_checked=datetime.utcnow())
            return {"success": True, "messages": messages, "purchase_orders": purchase_orders}

        except ReconnectRequiredError as e:
            await self._record_account_failure(account, e)
            await self.storage.update_email_account(account.id, needs_reconnect=True)
            logger.warning(f"Pausing {account.email} until it is reconnected: {e}")
            await self.notifications.notify_reconnect_required(account, str(e))
        except Exception as e:
            logger.exception(f"Error processing emails for {account.email}: {e}")
            await self._record_account_failure(account, e)
            await self.notifications.notify_email_check_failed(account, str(e))

        return {"success": False, "messages": 0, "purchase_orders": 0}

    async def _record_account_failure(self, account: EmailAccount, error: Exception) -> None:
        await self.stage_logger.record_failure(
            account.tenant_id,
            ProcessingStage.EMAIL_DETECTION,
            f"Failed to process emails: {error}",
            details={
                "account_id": account.id,
                "email": account.email,
                "provider": account.provider.value,
                "status_code": getattr(error, "status_code", None),
            },
        )

    async def _poll_account(self, account: EmailAccount, since: datetime):
        client = self.mail_client_factory(account.provider, transport=self.transport)
        messages = await client.list_candidate_messages(account, since)

        handled = 0
        purchase_orders = 0
        for message in messages:
            if await self.storage.is_message_processed(account.id, message.message_id):
                # Already through intake on an earlier tick; only the read flag is missing
                logger.debug(f"Message {message.message_id} for {account.email} already processed")
                await self._mark_processed(client, account, message)
                continue

            try:
                attachments = await client.get_attachments(account, message)
            except (MailboxAuthError, ReconnectRequiredError):
                raise
            except MailProviderError as e:
                # Left unread; picked up again next tick
                logger.warning(f"Skipping message {message.message_id} for {account.email}: {e}")
                continue

            created = await self.intake.process_email(account, message, attachments)
            await self.storage.record_processed_message(account.id, message.message_id)
            handled += 1
            purchase_orders += len(created)
            await self._mark_processed(client, account, message)

        return handled, purchase_orders

    async def _mark_processed(self, client: MailClient, account: EmailAccount, message: MailMessage) -> None:
        try:
            await client.mark_processed(account, message)
        except (MailboxAuthError, ReconnectRequiredError):
            raise
        except MailProviderError as e:
            logger.warning(f"Could not mark message {message.message_id} processed for {account.email}: {e}")
