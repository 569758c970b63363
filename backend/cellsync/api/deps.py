"""FastAPI dependencies for principal resolution."""

import logging
from typing import Annotated, Any

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cellsync.core.exceptions import AuthenticationError
from cellsync.db.supabase import SupabaseClient
from cellsync.integrations.domain import Principal

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)

ACCESS_TOKEN_COOKIE = "access_token"


def _principal_from_user(user: Any) -> Principal:
    app_metadata = getattr(user, "app_metadata", None) or {}
    org_id = app_metadata.get("org_id") if isinstance(app_metadata, dict) else None
    return Principal(user_id=str(user.id), org_id=str(org_id) if org_id else None)


def _resolve_token(
    credentials: HTTPAuthorizationCredentials | None, cookie_token: str | None
) -> str | None:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return cookie_token or None


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    access_token: Annotated[str | None, Cookie(alias=ACCESS_TOKEN_COOKIE)] = None,
) -> Principal:
    """Resolve the principal from a bearer token or the access token cookie.

    Browser redirects (the OAuth callback) carry no Authorization header,
    so the cookie is accepted as a fallback.

    Raises:
        HTTPException: 401 if no valid token is present.
    """
    token = _resolve_token(credentials, access_token)
    if not token:
        logger.warning("AUTH: No credentials provided in request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        client = SupabaseClient.get_client()
        response = client.auth.get_user(token)

        if response is None or response.user is None:
            raise AuthenticationError("Invalid authentication token")

        principal = _principal_from_user(response.user)
        logger.debug("AUTH: Token validated for user_id=%s", principal.user_id)
        return principal

    except AuthenticationError as e:
        logger.warning("AUTH: AuthenticationError - %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except Exception as e:
        logger.exception("AUTH: Unexpected error during token validation")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_optional_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    access_token: Annotated[str | None, Cookie(alias=ACCESS_TOKEN_COOKIE)] = None,
) -> Principal | None:
    """Principal if authenticated, None otherwise."""
    if _resolve_token(credentials, access_token) is None:
        return None

    try:
        return await get_current_principal(credentials, access_token)
    except HTTPException:
        return None


# Type aliases for common dependency patterns
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
OptionalPrincipal = Annotated[Principal | None, Depends(get_optional_principal)]
