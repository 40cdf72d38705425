"""Subject tokens issued by the external identity layer.

The service never checks credentials itself; it only verifies the signature
of the token the identity layer handed to the caller and reads ``sub``.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass

import jwt
from jwt import InvalidTokenError

from app.core.settings import settings


ALGORITHM = "HS256"
DEFAULT_TTL = datetime.timedelta(minutes=15)


class AccessTokenValidationError(Exception):
    pass


@dataclass(frozen=True)
class AccessTokenPayload:
    sub: str
    email: str | None
    iat: datetime.datetime
    exp: datetime.datetime
    iss: str


def issue_access_token(
    *,
    subject_id: str,
    email: str | None = None,
    now: datetime.datetime | None = None,
    expires_in: datetime.timedelta | None = None,
) -> tuple[str, datetime.datetime]:
    issued_at = now or datetime.datetime.now(datetime.UTC)
    expiry = issued_at + (expires_in or DEFAULT_TTL)
    payload: dict[str, object] = {
        "sub": subject_id,
        "iss": settings.identity_token_issuer,
        "iat": int(issued_at.timestamp()),
        "exp": int(expiry.timestamp()),
    }
    if email is not None:
        payload["email"] = email
    token = jwt.encode(payload, settings.identity_token_secret, algorithm=ALGORITHM)
    return token, expiry


def validate_access_token(token: str) -> AccessTokenPayload:
    try:
        payload = jwt.decode(
            token,
            settings.identity_token_secret,
            algorithms=[ALGORITHM],
            issuer=settings.identity_token_issuer,
            options={"require": ["sub", "iat", "exp", "iss"]},
        )
    except InvalidTokenError as exc:
        raise AccessTokenValidationError("invalid access token") from exc

    try:
        subject = str(payload["sub"]).strip()
        if not subject:
            raise ValueError("empty subject")
        email = payload.get("email")
        return AccessTokenPayload(
            sub=subject,
            email=str(email) if email is not None else None,
            iat=datetime.datetime.fromtimestamp(int(payload["iat"]), tz=datetime.UTC),
            exp=datetime.datetime.fromtimestamp(int(payload["exp"]), tz=datetime.UTC),
            iss=str(payload["iss"]),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise AccessTokenValidationError("malformed access token payload") from exc
