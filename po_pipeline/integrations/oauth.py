"""
OAuth access-token refresh for Gmail and Outlook accounts.
The consent flow that first issues the tokens lives outside this service.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from po_pipeline.config import get_config
from po_pipeline.exceptions import MailProviderError, ReconnectRequiredError
from po_pipeline.schemas.records import EmailAccount, MailProvider
from po_pipeline.storage import Storage
from po_pipeline.utils import truncate
from po_pipeline.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPES = "https://graph.microsoft.com/Mail.ReadWrite offline_access"


class OAuthTokenRefresher:
    """Exchanges a stored refresh token for a new access token and persists it."""

    def __init__(self, storage: Storage, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.storage = storage
        self.transport = transport

    def _token_request(self, account: EmailAccount, refresh_token: str):
        creds = account.credentials
        if account.provider == MailProvider.GMAIL:
            return GOOGLE_TOKEN_URL, {
                "client_id": creds.get("client_id") or config.GOOGLE_CLIENT_ID,
                "client_secret": creds.get("client_secret") or config.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        if account.provider == MailProvider.OUTLOOK:
            return MICROSOFT_TOKEN_URL, {
                "client_id": creds.get("client_id") or config.MICROSOFT_CLIENT_ID,
                "client_secret": creds.get("client_secret") or config.MICROSOFT_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": MICROSOFT_SCOPES,
            }
        raise ReconnectRequiredError(f"{account.provider.value} accounts have no token to refresh")

    async def refresh(self, account: EmailAccount) -> EmailAccount:
        """
        Refresh the account's access token.

        Raises:
            ReconnectRequiredError: no refresh token, or the provider rejected it
            MailProviderError: the token endpoint could not be reached
        """
        refresh_token = account.credentials.get("refresh_token")
        if not refresh_token:
            raise ReconnectRequiredError(f"No refresh token stored for {account.email}")

        url, form = self._token_request(account, refresh_token)

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=config.OAUTH_TIMEOUT_SECONDS) as client:
                response = await client.post(url, data=form)
        except httpx.HTTPError as e:
            raise MailProviderError(f"Token refresh request failed for {account.email}: {e}")

        if not response.is_success:
            raise ReconnectRequiredError(
                f"Token refresh failed for {account.email}: {truncate(response.text, 200)}",
                status_code=response.status_code,
            )

        tokens = response.json()
        credentials = dict(account.credentials)
        credentials["access_token"] = tokens["access_token"]
        # Microsoft rotates refresh tokens; Google usually does not return one
        if tokens.get("refresh_token"):
            credentials["refresh_token"] = tokens["refresh_token"]
        credentials.pop("expires_at", None)
        if tokens.get("expires_in"):
            expires_at = datetime.utcnow() + timedelta(seconds=int(tokens["expires_in"]))
            credentials["expires_at"] = expires_at.isoformat()

        logger.info(f"Refreshed access token for {account.email} ({account.provider.value})")
        return await self.storage.update_email_account(account.id, credentials=credentials, needs_reconnect=False)

    @staticmethod
    def _expires_at(account: EmailAccount) -> Optional[datetime]:
        value = account.credentials.get("expires_at")
        if not value:
            return None
        expires_at = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        return expires_at

    async def ensure_valid(self, account: EmailAccount) -> EmailAccount:
        """
        Refresh ahead of time when the access token is about to expire.
        Accounts without a recorded expiry are returned unchanged and rely on 401 handling.
        """
        if account.provider not in (MailProvider.GMAIL, MailProvider.OUTLOOK):
            return account
        expires_at = self._expires_at(account)
        if expires_at is None:
            return account

        refresh_after = expires_at - timedelta(seconds=config.OAUTH_REFRESH_BUFFER_SECONDS)
        if datetime.utcnow() < refresh_after:
            return account

        logger.info(f"Access token for {account.email} expires at {expires_at.isoformat()}; refreshing")
        return await self.refresh(account)
