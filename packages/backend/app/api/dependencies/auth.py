from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.security.tokens import AccessTokenValidationError, validate_access_token


bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Invalid or expired access token.") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_access_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    if credentials is None:
        raise _unauthorized("Missing bearer token.")
    if credentials.scheme.lower() != "bearer" or not credentials.credentials.strip():
        raise _unauthorized("Invalid authorization scheme.")
    return credentials.credentials


async def get_current_subject(access_token: str = Depends(get_access_token)) -> str:
    """Subject id of the caller, as asserted by the identity layer's token."""
    try:
        payload = validate_access_token(access_token)
    except AccessTokenValidationError as exc:
        raise _unauthorized() from exc
    return payload.sub
