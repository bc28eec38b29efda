"""
Token lifecycle manager.

Hands callers a currently-valid access token and hides the refresh mechanics.
Tokens live only in the TokenStore; nothing here is cached in memory.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.services.oauth_providers import OAuthProvider, DEFAULT_ACCOUNT_ID
from app.services.token_store import StoredTokens, TokenStore
from app.utils import utcnow

logger = logging.getLogger(__name__)

# Refresh this long before the provider-reported expiry
EXPIRY_BUFFER = timedelta(minutes=5)


class TokenManager:
    """Produces valid access tokens, refreshing them through the OAuth provider."""

    def __init__(
        self,
        token_store: TokenStore,
        oauth_provider: OAuthProvider,
        clock: Callable[[], datetime] = utcnow
    ):
        self.token_store = token_store
        self.oauth_provider = oauth_provider
        self._clock = clock

    def save_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: float
    ) -> None:
        """
        Persist tokens after a code exchange or refresh.

        Args:
            user_id: Provider account identifier
            access_token: Bearer token for the mail API
            refresh_token: Long-lived token, may be None
            expires_in: Seconds until access_token expires
        """
        expires_at = self._clock() + timedelta(seconds=expires_in)
        self.token_store.save(StoredTokens(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at
        ))
        logger.info("Tokens saved for user %s, expiring at %s", user_id, expires_at.isoformat())

    def get_valid_access_token(self) -> Optional[str]:
        """
        Return an access token that is valid for at least the next 5 minutes.

        Returns:
            The access token, or None when the user has to sign in again
        """
        tokens = self.token_store.get()
        if tokens is None:
            logger.info("No tokens found in database")
            return None

        if tokens.expires_at - self._clock() > EXPIRY_BUFFER:
            return tokens.access_token

        if not tokens.refresh_token:
            logger.info("No refresh token available, re-authentication required")
            return None

        logger.info("Access token expired or expiring soon, refreshing...")
        return self._refresh_access_token(tokens)

    def _refresh_access_token(self, tokens: StoredTokens) -> Optional[str]:
        try:
            refreshed = self.oauth_provider.refresh(tokens.refresh_token)
        except Exception:
            logger.exception("Error refreshing access token, clearing stored tokens")
            # An unrefreshable token is unrecoverable: force a fresh login
            self.token_store.clear()
            return None

        expires_in = (refreshed.expires_at - self._clock()).total_seconds()
        self.save_tokens(
            refreshed.account_id or tokens.user_id or DEFAULT_ACCOUNT_ID,
            refreshed.access_token,
            # Providers may skip refresh-token rotation
            refreshed.refresh_token or tokens.refresh_token,
            expires_in
        )
        logger.info("Access token refreshed successfully")
        return refreshed.access_token

    def clear_tokens(self) -> None:
        self.token_store.clear()
        logger.info("Tokens cleared from database")
