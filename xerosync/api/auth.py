from __future__ import annotations

import hmac

from fastapi import HTTPException


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def require_cron_secret(authorization: str | None, *, cron_secret: str | None) -> None:
    """Cron triggers are always authenticated; an unset secret rejects every call."""
    token = bearer_token(authorization)
    if not cron_secret or token is None or not hmac.compare_digest(token, cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_admin_token(authorization: str | None, *, admin_api_token: str | None) -> None:
    if not admin_api_token:
        return
    token = bearer_token(authorization)
    if token is None or not hmac.compare_digest(token, admin_api_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
