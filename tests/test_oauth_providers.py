"""
Tests for the OAuth provider adapters. No network calls are made.
"""

import json
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from app.exceptions import OAuthError
from app.services.oauth_providers import GoogleOAuthProvider, MicrosoftOAuthProvider
from app.utils import utcnow


def test_google_authorization_url_requests_offline_access():
    provider = GoogleOAuthProvider("client-id", "client-secret", "http://localhost:8000/api/v1/auth/callback")

    url = provider.get_authorization_url()

    query = parse_qs(urlparse(url).query)
    assert query["client_id"] == ["client-id"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["redirect_uri"] == ["http://localhost:8000/api/v1/auth/callback"]
    assert "https://www.googleapis.com/auth/gmail.readonly" in query["scope"][0]


def test_msal_result_is_converted():
    before = utcnow()

    tokens = MicrosoftOAuthProvider._tokens_from(
        {
            "access_token": "eyJ0",
            "refresh_token": "M.R3",
            "expires_in": 3599,
            "id_token_claims": {"oid": "00000000-aaaa", "sub": "ignored"},
        },
        "exchange authorization code"
    )

    assert tokens.access_token == "eyJ0"
    assert tokens.refresh_token == "M.R3"
    assert tokens.account_id == "00000000-aaaa"
    assert (tokens.expires_at - before).total_seconds() == pytest.approx(3599, abs=5)


def test_msal_result_without_claims():
    tokens = MicrosoftOAuthProvider._tokens_from({"access_token": "eyJ0"}, "refresh Microsoft token")

    assert tokens.refresh_token is None
    assert tokens.account_id is None


def test_msal_error_result_raises():
    with pytest.raises(OAuthError, match="invalid_grant"):
        MicrosoftOAuthProvider._tokens_from(
            {"error": "invalid_grant", "error_description": "AADSTS70000: refresh token expired"},
            "refresh Microsoft token"
        )


def _google_token_response(scope: str):
    response = MagicMock()
    response.status_code = 200
    response.headers = {"Content-Type": "application/json"}
    response.text = json.dumps({
        "access_token": "ya29.test",
        "refresh_token": "1//refresh",
        "expires_in": 3599,
        "token_type": "Bearer",
        "scope": scope,
        "id_token": "eyJhbGciOiJSUzI1NiJ9.e30.sig",
    })
    return response


def test_google_exchange_accepts_openid_in_granted_scopes():
    provider = GoogleOAuthProvider("client-id", "client-secret", "http://localhost:8000/api/v1/auth/callback")
    # Google reports the granted scopes in its own order, with openid added
    granted = " ".join([
        "openid",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/userinfo.profile",
    ])
    gmail = MagicMock()
    gmail.users.return_value.getProfile.return_value.execute.return_value = {"emailAddress": "me@example.com"}

    with patch("requests_oauthlib.OAuth2Session.request", return_value=_google_token_response(granted)), \
            patch("app.services.oauth_providers.build", return_value=gmail):
        tokens = provider.exchange_code("4/0Aauth-code")

    assert tokens.access_token == "ya29.test"
    assert tokens.refresh_token == "1//refresh"
    assert tokens.account_id == "me@example.com"
    assert tokens.expires_at > utcnow()


def test_google_login_requests_openid_without_incremental_scopes():
    provider = GoogleOAuthProvider("client-id", "client-secret", "http://localhost:8000/api/v1/auth/callback")

    query = parse_qs(urlparse(provider.get_authorization_url()).query)

    assert "openid" in query["scope"][0].split()
    assert "include_granted_scopes" not in query
