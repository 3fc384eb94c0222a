from __future__ import annotations

from datetime import date, timedelta

from xerosync.domain.errors import DomainValidationError
from xerosync.domain.models import LineItem, StagedInvoice, StagedPayment, UserProfile
from xerosync.domain.money import cents_to_dollars
from xerosync.domain.sync_policy import InvoicePolicy

XERO_INVOICE_STATUS = "AUTHORISED"
XERO_DATE_FORMAT = "%Y-%m-%d"


def contact_name_for(user: UserProfile) -> str:
    name = f"{user.first_name} {user.last_name}".strip()
    if user.member_id:
        return f"{name} - {user.member_id}"
    return name


def build_contact_payload(user: UserProfile) -> dict[str, object]:
    payload: dict[str, object] = {
        "Name": contact_name_for(user),
        "FirstName": user.first_name,
        "LastName": user.last_name,
        "EmailAddress": user.email,
    }
    if user.member_id:
        payload["AccountNumber"] = user.member_id
    return payload


def invoice_date_for(invoice: StagedInvoice, *, today: date) -> date:
    if invoice.created_at is not None:
        return invoice.created_at.date()
    return today


def build_line_item_payload(item: LineItem, *, policy: InvoicePolicy) -> dict[str, object]:
    payload: dict[str, object] = {
        "Description": item.description,
        "Quantity": item.quantity,
        "UnitAmount": cents_to_dollars(item.unit_amount),
        "LineAmount": cents_to_dollars(item.line_amount),
        "TaxType": item.tax_type or policy.default_tax_type,
    }
    if item.account_code:
        payload["AccountCode"] = item.account_code
    return payload


def build_invoice_payload(
    invoice: StagedInvoice,
    *,
    contact_id: str,
    policy: InvoicePolicy,
    today: date,
) -> dict[str, object]:
    if not invoice.line_items:
        raise DomainValidationError(f"invoice {invoice.id} has no line items")

    issued_on = invoice_date_for(invoice, today=today)
    return {
        "Type": "ACCREC",
        "Contact": {"ContactID": contact_id},
        "Date": issued_on.strftime(XERO_DATE_FORMAT),
        "DueDate": (issued_on + timedelta(days=policy.due_days)).strftime(XERO_DATE_FORMAT),
        "LineItems": [build_line_item_payload(item, policy=policy) for item in invoice.line_items],
        "Reference": "",
        "Status": XERO_INVOICE_STATUS,
        "CurrencyCode": policy.currency,
    }


def build_credit_note_payload(
    invoice: StagedInvoice,
    *,
    contact_id: str,
    policy: InvoicePolicy,
    today: date,
) -> dict[str, object]:
    if not invoice.line_items:
        raise DomainValidationError(f"credit note {invoice.id} has no line items")

    refund_id = invoice.staging_metadata.get("refund_id")
    return {
        "Type": "ACCRECCREDIT",
        "Contact": {"ContactID": contact_id},
        "Date": invoice_date_for(invoice, today=today).strftime(XERO_DATE_FORMAT),
        "LineItems": [build_line_item_payload(item, policy=policy) for item in invoice.line_items],
        "Reference": f"Refund {refund_id}" if refund_id else "",
        "Status": XERO_INVOICE_STATUS,
        "CurrencyCode": policy.currency,
    }


def payment_reference_for(payment: StagedPayment) -> str:
    if payment.reference:
        return payment.reference
    charge_id = payment.staging_metadata.get("stripe_charge_id")
    if charge_id:
        return str(charge_id)
    return payment.invoice_number or ""


def build_payment_payload(
    payment: StagedPayment,
    *,
    bank_account_code: str,
    today: date,
) -> dict[str, object]:
    if not payment.invoice_xero_id:
        raise DomainValidationError(f"payment {payment.id} has no synced invoice")

    return {
        "Invoice": {"InvoiceID": payment.invoice_xero_id},
        "Account": {"Code": bank_account_code},
        "Date": today.strftime(XERO_DATE_FORMAT),
        "Amount": cents_to_dollars(payment.amount_paid),
        "Reference": payment_reference_for(payment),
    }


def response_errors(element: dict[str, object]) -> list[str]:
    """Collects validation messages Xero attaches to a batch element."""
    messages: list[str] = []
    errors = element.get("ValidationErrors")
    if isinstance(errors, list):
        for error in errors:
            if isinstance(error, dict) and error.get("Message"):
                messages.append(str(error["Message"]))
    if element.get("HasErrors") and not messages:
        messages.append("Xero reported errors for this element")
    return messages
