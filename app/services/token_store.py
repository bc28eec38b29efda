"""
Token store - durable record of the signed-in user's OAuth credentials.

Single user, single row: every save overwrites it, logout deletes it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import sessionmaker

from app.models.auth_token import AuthToken, SINGLETON_ID
from app.utils import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredTokens:
    """Detached copy of the token row."""
    user_id: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime


class TokenStore:
    """Reads and writes the single AuthToken row."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self) -> Optional[StoredTokens]:
        with self._session_factory() as db:
            row = db.query(AuthToken).filter(AuthToken.id == SINGLETON_ID).first()
            if row is None:
                return None
            return StoredTokens(
                user_id=row.user_id,
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=as_utc(row.expires_at)
            )

    def save(self, tokens: StoredTokens) -> None:
        """Overwrite the token row."""
        with self._session_factory() as db:
            row = db.query(AuthToken).filter(AuthToken.id == SINGLETON_ID).first()
            if row is None:
                row = AuthToken(id=SINGLETON_ID)
                db.add(row)
            row.user_id = tokens.user_id
            row.access_token = tokens.access_token
            row.refresh_token = tokens.refresh_token
            row.expires_at = as_utc(tokens.expires_at)
            db.commit()

    def clear(self) -> None:
        with self._session_factory() as db:
            db.query(AuthToken).delete()
            db.commit()
