from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

from xerosync.domain.errors import XeroApiError
from xerosync.lib.xero.auth import XeroTokenManager

logger = logging.getLogger("xero.client")

# Ask Xero to report validation errors per element instead of failing the batch.
BATCH_PARAMS = {"summarizeErrors": "false"}


@dataclass
class HttpXeroClient:
    token_manager: XeroTokenManager
    http: httpx.AsyncClient

    async def validate_connection(self, *, tenant_id: str) -> bool:
        try:
            body = await self._request("GET", "/Organisation", tenant_id=tenant_id)
        except XeroApiError as exc:
            logger.warning(
                "xero connection validation failed: %s",
                exc,
                extra={"tenant_id": tenant_id, "operation": "validate_connection"},
            )
            return False
        organisations = body.get("Organisations")
        return isinstance(organisations, list) and len(organisations) > 0

    async def find_contacts(self, *, tenant_id: str, where: str) -> list[dict[str, object]]:
        body = await self._request("GET", "/Contacts", tenant_id=tenant_id, params={"where": where})
        return _elements(body, "Contacts")

    async def create_contact(self, *, tenant_id: str, contact: dict[str, object]) -> dict[str, object]:
        body = await self._request("PUT", "/Contacts", tenant_id=tenant_id, json={"Contacts": [contact]})
        contacts = _elements(body, "Contacts")
        if not contacts:
            raise XeroApiError("Xero returned no contact", details=body)
        return contacts[0]

    async def create_invoices(self, *, tenant_id: str, invoices: list[dict[str, object]]) -> list[dict[str, object]]:
        body = await self._request(
            "PUT",
            "/Invoices",
            tenant_id=tenant_id,
            params=BATCH_PARAMS,
            json={"Invoices": invoices},
        )
        return _elements(body, "Invoices")

    async def create_credit_notes(
        self,
        *,
        tenant_id: str,
        credit_notes: list[dict[str, object]],
    ) -> list[dict[str, object]]:
        body = await self._request(
            "PUT",
            "/CreditNotes",
            tenant_id=tenant_id,
            params=BATCH_PARAMS,
            json={"CreditNotes": credit_notes},
        )
        return _elements(body, "CreditNotes")

    async def create_payments(self, *, tenant_id: str, payments: list[dict[str, object]]) -> list[dict[str, object]]:
        body = await self._request(
            "PUT",
            "/Payments",
            tenant_id=tenant_id,
            params=BATCH_PARAMS,
            json={"Payments": payments},
        )
        return _elements(body, "Payments")

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.token_manager.http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        tenant_id: str,
        params: dict[str, str] | None = None,
        json: dict[str, object] | None = None,
    ) -> dict[str, Any]:
        access_token = await self.token_manager.access_token_for(tenant_id=tenant_id)
        if access_token is None:
            raise XeroApiError("Unable to authenticate with Xero", status_code=401)

        try:
            response = await self.http.request(
                method,
                path,
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Xero-Tenant-Id": tenant_id,
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise XeroApiError(f"Xero request failed: {exc}") from exc

        if response.status_code == 429:
            raise XeroApiError(
                "Xero rate limit exceeded",
                status_code=429,
                details={"retry_after": response.headers.get("Retry-After")},
            )

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                raise XeroApiError(
                    f"HTTP {response.status_code}: {response.text}",
                    status_code=response.status_code,
                ) from None
            message = error_data.get("Message") or error_data.get("Detail") or response.text
            raise XeroApiError(str(message), status_code=response.status_code, details=error_data)

        try:
            return response.json()
        except ValueError:
            raise XeroApiError(
                f"Xero returned a non-JSON response: HTTP {response.status_code}",
                status_code=response.status_code,
            ) from None


def _elements(body: dict[str, Any], key: str) -> list[dict[str, object]]:
    value = body.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
