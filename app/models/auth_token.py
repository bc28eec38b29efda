"""
AuthToken model - the token store's single row.

Only one user is ever signed in, so the row always has id 1 and is
overwritten on every save. Token values are never exposed by the API.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.sql import func
from app.database import Base

SINGLETON_ID = 1


class AuthToken(Base):
    """OAuth credentials of the signed-in user."""
    __tablename__ = "auth_tokens"

    id = Column(Integer, primary_key=True, default=SINGLETON_ID)
    user_id = Column(String(255), nullable=False)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)  # Not every provider response carries one

    # Absolute expiry of access_token (UTC)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<AuthToken(user_id={self.user_id}, expires_at={self.expires_at})>"
