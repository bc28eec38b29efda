"""
FastAPI dependencies.

The session cookie only says *who* is signed in; the access token itself is
always read (and refreshed) through the TokenManager.
"""

from fastapi import Depends, Request

from app.container import ServiceContainer
from app.exceptions import NotAuthenticatedError

SESSION_USER_KEY = "user_id"


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_session_user(request: Request) -> str | None:
    return request.session.get(SESSION_USER_KEY)


def require_access_token(
    request: Request,
    services: ServiceContainer = Depends(get_services)
) -> str:
    """
    Resolve a valid access token for the signed-in user.

    Raises:
        NotAuthenticatedError: No session, or the token cannot be refreshed
    """
    if not get_session_user(request):
        raise NotAuthenticatedError("Not authenticated")

    access_token = services.token_manager.get_valid_access_token()
    if not access_token:
        raise NotAuthenticatedError("Session expired. Please log in again.")
    return access_token


def require_session(request: Request) -> str:
    """For diagnostic endpoints that need a signed-in user but no mail access."""
    user_id = get_session_user(request)
    if not user_id:
        raise NotAuthenticatedError("Not authenticated")
    return user_id
