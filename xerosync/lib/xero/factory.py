from __future__ import annotations

import httpx

from xerosync.domain.contracts import StagingRepository
from xerosync.lib.xero.auth import XeroCredentials, XeroTokenManager
from xerosync.lib.xero.client import HttpXeroClient

DEFAULT_TIMEOUT_SECONDS = 30.0


def build_xero_client(
    *,
    repository: StagingRepository,
    credentials: XeroCredentials,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpXeroClient:
    identity_http = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS, transport=transport)
    api_http = httpx.AsyncClient(
        base_url=credentials.api_base,
        timeout=DEFAULT_TIMEOUT_SECONDS,
        transport=transport,
    )
    token_manager = XeroTokenManager(
        repository=repository,
        credentials=credentials,
        http=identity_http,
    )
    return HttpXeroClient(token_manager=token_manager, http=api_http)
