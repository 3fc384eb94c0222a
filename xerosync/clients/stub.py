from __future__ import annotations

from dataclasses import dataclass, field
import re

from xerosync.domain.dto import ChargeResult

_WHERE_EQUALS = re.compile(r'^\s*(\w+)\s*==\s*"(.*)"\s*$')


@dataclass
class StubXeroClient:
    """Records calls and answers with scripted or generated Xero elements.

    `failures` maps an operation name to an exception raised on its next call.
    `responses` maps a batch operation name to queued element lists.
    """

    connection_ok: bool = True
    contacts: list[dict[str, object]] = field(default_factory=list)
    calls: list[tuple[str, object]] = field(default_factory=list)
    failures: dict[str, list[BaseException]] = field(default_factory=dict)
    responses: dict[str, list[list[dict[str, object]]]] = field(default_factory=dict)
    _sequence: int = 0

    def fail_next(self, operation: str, exc: BaseException) -> None:
        self.failures.setdefault(operation, []).append(exc)

    def respond_next(self, operation: str, elements: list[dict[str, object]]) -> None:
        self.responses.setdefault(operation, []).append(elements)

    def calls_for(self, operation: str) -> list[object]:
        return [payload for name, payload in self.calls if name == operation]

    async def validate_connection(self, *, tenant_id: str) -> bool:
        self._record("validate_connection", tenant_id)
        return self.connection_ok

    async def find_contacts(self, *, tenant_id: str, where: str) -> list[dict[str, object]]:
        self._record("find_contacts", where)
        match = _WHERE_EQUALS.match(where)
        if match is None:
            return []
        field_name, value = match.group(1), match.group(2).replace('\\"', '"')
        return [dict(contact) for contact in self.contacts if contact.get(field_name) == value]

    async def create_contact(self, *, tenant_id: str, contact: dict[str, object]) -> dict[str, object]:
        self._record("create_contact", contact)
        created = {**contact, "ContactID": f"contact-{self._next()}"}
        self.contacts.append(created)
        return created

    async def create_invoices(self, *, tenant_id: str, invoices: list[dict[str, object]]) -> list[dict[str, object]]:
        self._record("create_invoices", invoices)
        scripted = self._scripted("create_invoices")
        if scripted is not None:
            return scripted
        elements: list[dict[str, object]] = []
        for invoice in invoices:
            number = self._next()
            elements.append({**invoice, "InvoiceID": f"xero-inv-{number}", "InvoiceNumber": f"INV-{number:04d}"})
        return elements

    async def create_credit_notes(
        self,
        *,
        tenant_id: str,
        credit_notes: list[dict[str, object]],
    ) -> list[dict[str, object]]:
        self._record("create_credit_notes", credit_notes)
        scripted = self._scripted("create_credit_notes")
        if scripted is not None:
            return scripted
        elements: list[dict[str, object]] = []
        for credit_note in credit_notes:
            number = self._next()
            elements.append(
                {**credit_note, "CreditNoteID": f"xero-cn-{number}", "CreditNoteNumber": f"CN-{number:04d}"}
            )
        return elements

    async def create_payments(self, *, tenant_id: str, payments: list[dict[str, object]]) -> list[dict[str, object]]:
        self._record("create_payments", payments)
        scripted = self._scripted("create_payments")
        if scripted is not None:
            return scripted
        return [{**payment, "PaymentID": f"xero-pay-{self._next()}"} for payment in payments]

    def _record(self, operation: str, payload: object) -> None:
        self.calls.append((operation, payload))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _scripted(self, operation: str) -> list[dict[str, object]] | None:
        queued = self.responses.get(operation)
        if queued:
            return queued.pop(0)
        return None

    def _next(self) -> int:
        self._sequence += 1
        return self._sequence


@dataclass
class StubPaymentProcessor:
    charges: list[dict[str, object]] = field(default_factory=list)
    declines: list[str | None] = field(default_factory=list)
    decline_all: str | None = None

    async def charge_installment(
        self,
        *,
        amount: int,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        self.charges.append(
            {
                "amount": amount,
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata),
            }
        )
        # Queued decline reasons are consumed in order, then decline_all applies.
        decline = self.declines.pop(0) if self.declines else self.decline_all
        if decline is not None:
            return ChargeResult(succeeded=False, failure_reason=decline)
        sequence = len(self.charges)
        return ChargeResult(succeeded=True, payment_intent_id=f"pi_stub_{sequence}", charge_id=f"ch_stub_{sequence}")
