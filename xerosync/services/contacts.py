from __future__ import annotations

from dataclasses import dataclass
import logging

from xerosync.domain.contracts import StagingRepository, XeroClient
from xerosync.domain.errors import DomainValidationError, XeroApiError
from xerosync.domain.models import SyncLogEntry, UserProfile
from xerosync.domain.use_cases.xero_payloads import build_contact_payload, contact_name_for
from xerosync.services.sync_logs import write_sync_log_safely

logger = logging.getLogger("xero.sync")


def where_equals(field_name: str, value: str) -> str:
    escaped = value.replace('"', '\\"')
    return f'{field_name}=="{escaped}"'


@dataclass
class ContactResolver:
    repository: StagingRepository
    xero: XeroClient

    async def get_or_create_contact(self, *, user_id: str, tenant_id: str) -> str:
        """Return the Xero ContactID for a user, creating the contact when Xero has none.

        Lookup order: synced local mapping, exact contact name, email address.
        Errors from Xero propagate so the caller can classify them.
        """
        mapping = await self.repository.get_contact_mapping(user_id=user_id, tenant_id=tenant_id)
        if mapping is not None and mapping.sync_status == "synced":
            return mapping.xero_contact_id

        user = await self.repository.get_user_profile(user_id=user_id)
        if user is None:
            raise DomainValidationError(f"user not found: {user_id}")

        try:
            contact, created = await self._find_or_create(user, tenant_id=tenant_id)
        except XeroApiError as exc:
            await write_sync_log_safely(
                self.repository,
                SyncLogEntry(
                    operation_type="contact_sync",
                    status="error",
                    tenant_id=tenant_id,
                    record_id=user_id,
                    request_data={"name": contact_name_for(user)},
                    error_message=str(exc),
                ),
            )
            raise

        contact_id = contact.get("ContactID")
        if not contact_id:
            raise XeroApiError("Xero contact has no ContactID", details=contact)

        contact_number = contact.get("ContactNumber")
        await self.repository.upsert_contact_mapping(
            user_id=user_id,
            tenant_id=tenant_id,
            xero_contact_id=str(contact_id),
            contact_number=str(contact_number) if contact_number else None,
        )
        await write_sync_log_safely(
            self.repository,
            SyncLogEntry(
                operation_type="contact_sync",
                status="success",
                tenant_id=tenant_id,
                record_id=user_id,
                xero_id=str(contact_id),
                request_data={"name": contact_name_for(user), "created": created},
            ),
        )
        logger.info(
            "xero contact created" if created else "xero contact matched",
            extra={"tenant_id": tenant_id, "record_id": user_id, "operation": "contact_sync"},
        )
        return str(contact_id)

    async def _find_or_create(self, user: UserProfile, *, tenant_id: str) -> tuple[dict[str, object], bool]:
        matches = await self.xero.find_contacts(
            tenant_id=tenant_id,
            where=where_equals("Name", contact_name_for(user)),
        )
        if not matches and user.email:
            matches = await self.xero.find_contacts(
                tenant_id=tenant_id,
                where=where_equals("EmailAddress", user.email),
            )
        if matches:
            return matches[0], False

        created = await self.xero.create_contact(tenant_id=tenant_id, contact=build_contact_payload(user))
        return created, True
