from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import logging
import os

import httpx

from xerosync.domain.contracts import StagingRepository
from xerosync.domain.models import SyncLogEntry, XeroTenant
from xerosync.lib.xero import DEFAULT_XERO_API_BASE, DEFAULT_XERO_IDENTITY_URL

REFRESH_TOKEN_LIFETIME = timedelta(days=60)
DEFAULT_ACCESS_TOKEN_LIFETIME = timedelta(minutes=30)
# Refresh slightly early so a token never expires mid-request.
ACCESS_TOKEN_SKEW = timedelta(seconds=60)

logger = logging.getLogger("xero.client")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class XeroCredentials:
    client_id: str
    client_secret: str
    api_base: str = DEFAULT_XERO_API_BASE
    identity_url: str = DEFAULT_XERO_IDENTITY_URL


def xero_credentials_from_env() -> XeroCredentials | None:
    client_id = os.getenv("XERO_CLIENT_ID")
    client_secret = os.getenv("XERO_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    return XeroCredentials(
        client_id=client_id,
        client_secret=client_secret,
        api_base=os.getenv("XERO_API_BASE", DEFAULT_XERO_API_BASE),
        identity_url=os.getenv("XERO_IDENTITY_URL", DEFAULT_XERO_IDENTITY_URL),
    )


def refresh_token_expires_at(tenant: XeroTenant) -> datetime:
    return tenant.updated_at + REFRESH_TOKEN_LIFETIME


@dataclass(frozen=True)
class RefreshedTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class XeroTokenManager:
    """Hands out a valid access token for the active tenant, refreshing it when expired."""

    repository: StagingRepository
    credentials: XeroCredentials
    http: httpx.AsyncClient
    clock: Callable[[], datetime] = field(default=_utcnow)

    async def access_token_for(self, *, tenant_id: str) -> str | None:
        tenant = await self.repository.get_active_tenant()
        if tenant is None or tenant.tenant_id != tenant_id:
            logger.warning("no active xero tokens for tenant", extra={"tenant_id": tenant_id})
            return None

        now = self.clock()
        if now >= refresh_token_expires_at(tenant):
            await self._deactivate(tenant, reason="refresh token expired, re-authentication required")
            return None

        if now < tenant.expires_at - ACCESS_TOKEN_SKEW:
            return tenant.access_token

        refreshed = await self._refresh(tenant, now=now)
        if refreshed is None:
            await self._deactivate(tenant, reason="token refresh failed, re-authentication required")
            return None

        await self.repository.update_tenant_tokens(
            tenant_id=tenant.tenant_id,
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token,
            expires_at=refreshed.expires_at,
        )
        await self.repository.write_sync_log(
            entry=SyncLogEntry(
                operation_type="token_refresh",
                status="success",
                tenant_id=tenant.tenant_id,
                response_data={"expires_at": refreshed.expires_at.isoformat()},
            )
        )
        logger.info("xero token refreshed", extra={"tenant_id": tenant.tenant_id, "operation": "token_refresh"})
        return refreshed.access_token

    async def _refresh(self, tenant: XeroTenant, *, now: datetime) -> RefreshedTokens | None:
        try:
            response = await self.http.post(
                self.credentials.identity_url,
                data={"grant_type": "refresh_token", "refresh_token": tenant.refresh_token},
                auth=(self.credentials.client_id, self.credentials.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "xero token refresh request failed: %s",
                exc,
                extra={"tenant_id": tenant.tenant_id, "operation": "token_refresh"},
            )
            return None

        if response.status_code >= 400:
            logger.warning(
                "xero token refresh rejected with status %s",
                response.status_code,
                extra={"tenant_id": tenant.tenant_id, "operation": "token_refresh"},
            )
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning(
                "xero token refresh returned a non-JSON body",
                extra={"tenant_id": tenant.tenant_id, "operation": "token_refresh"},
            )
            return None
        if not isinstance(body, dict):
            return None
        access_token = body.get("access_token")
        refresh_token = body.get("refresh_token")
        # Xero always rotates the refresh token; a missing one means the grant is unusable.
        if not access_token or not refresh_token:
            return None

        expires_in = body.get("expires_in")
        lifetime = (
            timedelta(seconds=int(expires_in))
            if isinstance(expires_in, int) and expires_in > 0
            else DEFAULT_ACCESS_TOKEN_LIFETIME
        )
        return RefreshedTokens(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=now + lifetime,
        )

    async def _deactivate(self, tenant: XeroTenant, *, reason: str) -> None:
        await self.repository.deactivate_tenant(tenant_id=tenant.tenant_id)
        await self.repository.write_sync_log(
            entry=SyncLogEntry(
                operation_type="token_refresh",
                status="error",
                tenant_id=tenant.tenant_id,
                error_message=reason,
            )
        )
        logger.error(reason, extra={"tenant_id": tenant.tenant_id, "operation": "token_refresh"})
