"""
OAuth authentication endpoints for mailbox access.

Flow:
1. GET /auth/login -> URL of the provider's consent screen
2. Provider redirects back to /auth/callback with code
3. /auth/callback exchanges code for tokens, saves them in the token store
   and marks the session as signed in
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel

from app.api.cache import no_cache
from app.api.deps import SESSION_USER_KEY, get_services, get_session_user
from app.container import ServiceContainer
from app.services.oauth_providers import DEFAULT_ACCOUNT_ID
from app.utils import utcnow

logger = logging.getLogger(__name__)


# Response Models
class LoginResponse(BaseModel):
    """Where to send the browser to sign in."""
    auth_url: str


class AuthStatusResponse(BaseModel):
    """Authentication status check response."""
    is_authenticated: bool


class LogoutResponse(BaseModel):
    success: bool


router = APIRouter(prefix="/auth", tags=["Authentication"], dependencies=[Depends(no_cache)])

_SUCCESS_PAGE = """<html>
  <head><title>Login Successful</title></head>
  <body>
    <h2>Authentication successful!</h2>
    <p>You can close this window now.</p>
    <script>
      if (window.opener) {{
        window.opener.postMessage({{ type: 'AUTH_SUCCESS' }}, '*');
        window.close();
      }} else {{
        window.location.href = '{frontend_url}';
      }}
    </script>
  </body>
</html>"""

_FAILURE_PAGE = """<html>
  <head><title>Login Failed</title></head>
  <body>
    <h2>Authentication failed</h2>
    <p>Please try again.</p>
    <script>
      if (window.opener) {
        window.opener.postMessage({ type: 'AUTH_ERROR' }, '*');
        window.close();
      }
    </script>
  </body>
</html>"""


@router.get("/login", response_model=LoginResponse)
def login(redirect: bool = False, services: ServiceContainer = Depends(get_services)):
    """
    Start OAuth flow.

    Returns the consent screen URL for the frontend to open, or redirects
    straight to it with ``?redirect=true``.
    """
    auth_url = services.oauth_provider.get_authorization_url()
    if redirect:
        return RedirectResponse(url=auth_url)
    return LoginResponse(auth_url=auth_url)


@router.get("/callback", response_class=HTMLResponse)
def callback(
    request: Request,
    code: str | None = None,
    error: str | None = None,
    services: ServiceContainer = Depends(get_services)
):
    """
    OAuth callback - exchanges authorization code for tokens.

    The provider redirects here after the user grants/denies permission.
    """
    if error:
        logger.warning("OAuth provider returned error: %s", error)
        return HTMLResponse(_FAILURE_PAGE, status_code=400)

    if not code:
        return HTMLResponse("Missing authorization code", status_code=400)

    try:
        tokens = services.oauth_provider.exchange_code(code)
    except Exception:
        logger.exception("Callback error")
        return HTMLResponse(_FAILURE_PAGE, status_code=500)

    user_id = tokens.account_id or DEFAULT_ACCOUNT_ID
    services.token_manager.save_tokens(
        user_id,
        tokens.access_token,
        tokens.refresh_token,
        (tokens.expires_at - utcnow()).total_seconds()
    )

    # The session only identifies the user; tokens stay in the token store
    request.session[SESSION_USER_KEY] = user_id
    logger.info("User %s signed in", user_id)

    return HTMLResponse(_SUCCESS_PAGE.format(frontend_url=services.settings.frontend_url))


@router.get("/status", response_model=AuthStatusResponse)
def auth_status(request: Request, services: ServiceContainer = Depends(get_services)):
    """Signed in and holding a token that is valid (or could be refreshed)."""
    if not get_session_user(request):
        return AuthStatusResponse(is_authenticated=False)

    access_token = services.token_manager.get_valid_access_token()
    return AuthStatusResponse(is_authenticated=access_token is not None)


@router.post("/logout", response_model=LogoutResponse)
def logout(request: Request, services: ServiceContainer = Depends(get_services)):
    """
    Delete stored credentials and clear the session.

    After this, you'll need to sign in again via /auth/login.
    """
    services.token_manager.clear_tokens()
    request.session.clear()
    return LogoutResponse(success=True)
