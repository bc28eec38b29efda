"""
OAuth providers for Gmail (Google) and Microsoft Graph (Microsoft identity platform).

Both expose the same three calls:
1. get_authorization_url() -> consent screen URL
2. exchange_code(code) -> tokens after the redirect back to /auth/callback
3. refresh(refresh_token) -> fresh access token without user interaction
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import msal
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from app.exceptions import OAuthError
from app.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"

# Google adds openid to the granted scopes whenever userinfo scopes are granted,
# and oauthlib rejects a token whose scopes differ from the requested ones
GOOGLE_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]

# MSAL adds openid, profile and offline_access itself and rejects them here
MICROSOFT_SCOPES = [
    "https://graph.microsoft.com/Mail.Read",
    "https://graph.microsoft.com/MailboxFolder.Read",
    "https://graph.microsoft.com/MailboxItem.Read",
    "https://graph.microsoft.com/User.Read",
]

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class OAuthTokens:
    """Result of a code exchange or refresh."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    account_id: Optional[str] = None


class OAuthProvider(ABC):
    """Abstract interface for an OAuth 2.0 authorization server."""

    @abstractmethod
    def get_authorization_url(self) -> str:
        """URL of the consent screen the browser is sent to."""

    @abstractmethod
    def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            OAuthError: If the provider rejects the code
        """

    @abstractmethod
    def refresh(self, refresh_token: str) -> OAuthTokens:
        """Mint a new access token.

        Raises:
            OAuthError: If the provider rejects the refresh token
        """


class GoogleOAuthProvider(OAuthProvider):
    """Google OAuth using google-auth-oauthlib."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def _get_flow(self) -> Flow:
        """Create OAuth flow from the configured web client."""
        client_config = {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }
        # Login and callback build separate flows, so no PKCE verifier can be shared
        return Flow.from_client_config(
            client_config,
            scopes=GOOGLE_SCOPES,
            redirect_uri=self.redirect_uri,
            autogenerate_code_verifier=False
        )

    def get_authorization_url(self) -> str:
        auth_url, _state = self._get_flow().authorization_url(
            access_type="offline",  # Get refresh token
            prompt="consent"  # Force consent to get refresh token
        )
        return auth_url

    def exchange_code(self, code: str) -> OAuthTokens:
        flow = self._get_flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            raise OAuthError(f"Failed to exchange authorization code: {e}") from e

        credentials = flow.credentials
        return OAuthTokens(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=self._expiry_of(credentials),
            account_id=self._account_id_of(credentials)
        )

    def refresh(self, refresh_token: str) -> OAuthTokens:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=GOOGLE_SCOPES
        )
        try:
            credentials.refresh(GoogleRequest())
        except GoogleAuthError as e:
            raise OAuthError(f"Failed to refresh Google token: {e}") from e

        return OAuthTokens(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=self._expiry_of(credentials)
        )

    @staticmethod
    def _expiry_of(credentials: Credentials) -> datetime:
        # google-auth reports expiry as naive UTC
        if credentials.expiry is None:
            return utcnow() + timedelta(seconds=DEFAULT_EXPIRES_IN)
        return as_utc(credentials.expiry)

    @staticmethod
    def _account_id_of(credentials: Credentials) -> str:
        """Use the mailbox address as the account id."""
        try:
            service = build("gmail", "v1", credentials=credentials, cache_discovery=False)
            profile = service.users().getProfile(userId="me").execute()
        except Exception:
            logger.warning("Could not read Gmail profile, using default account id", exc_info=True)
            return DEFAULT_ACCOUNT_ID
        return profile.get("emailAddress") or DEFAULT_ACCOUNT_ID


class MicrosoftOAuthProvider(OAuthProvider):
    """Microsoft identity platform using MSAL."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        authority: str = "https://login.microsoftonline.com/consumers"
    ):
        self.redirect_uri = redirect_uri
        self._client = msal.ConfidentialClientApplication(
            client_id,
            authority=authority,
            client_credential=client_secret
        )

    def get_authorization_url(self) -> str:
        return self._client.get_authorization_request_url(
            MICROSOFT_SCOPES,
            redirect_uri=self.redirect_uri,
            prompt="consent",  # Ensures a refresh token is issued
            response_mode="query"
        )

    def exchange_code(self, code: str) -> OAuthTokens:
        result = self._client.acquire_token_by_authorization_code(
            code,
            scopes=MICROSOFT_SCOPES,
            redirect_uri=self.redirect_uri
        )
        return self._tokens_from(result, "exchange authorization code")

    def refresh(self, refresh_token: str) -> OAuthTokens:
        result = self._client.acquire_token_by_refresh_token(
            refresh_token,
            scopes=MICROSOFT_SCOPES
        )
        return self._tokens_from(result, "refresh Microsoft token")

    @staticmethod
    def _tokens_from(result: dict, action: str) -> OAuthTokens:
        """Convert an MSAL result dict, raising on its error form."""
        if not result or "access_token" not in result:
            error = (result or {}).get("error", "unknown_error")
            description = (result or {}).get("error_description", "")
            raise OAuthError(f"Failed to {action}: {error} {description}".strip())

        claims = result.get("id_token_claims") or {}
        account_id = claims.get("oid") or claims.get("sub")

        expires_in = int(result.get("expires_in") or DEFAULT_EXPIRES_IN)
        return OAuthTokens(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=expires_in),
            account_id=account_id
        )
