from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

import yaml

DEFAULT_SYNC_POLICY_PATH = Path(__file__).resolve().parents[1] / "config" / "sync_policy.v1.yaml"


@dataclass(frozen=True)
class BatchPolicy:
    limit: int = 50
    min_delay_between_syncs_ms: int = 5000
    max_attempts: int = 3


@dataclass(frozen=True)
class InvoicePolicy:
    due_days: int = 30
    currency: str = "USD"
    default_tax_type: str = "NONE"
    default_revenue_account_code: str = "200"
    discount_account_code: str = "DISCOUNT"


@dataclass(frozen=True)
class PaymentPolicy:
    default_bank_account_code: str = "090"


@dataclass(frozen=True)
class InstallmentPolicy:
    retry_interval_hours: int = 24
    max_attempts: int = 3


@dataclass(frozen=True)
class SyncPolicy:
    policy_version: str = "sync-policy:v1"
    batch: BatchPolicy = BatchPolicy()
    invoices: InvoicePolicy = InvoicePolicy()
    payments: PaymentPolicy = PaymentPolicy()
    rate_limit_markers: tuple[str, ...] = ("rate limit", "429", "too many requests", "quota exceeded")
    installments: InstallmentPolicy = InstallmentPolicy()


def load_sync_policy(*, file_path: str | Path | None = None) -> SyncPolicy:
    path = file_path or os.getenv("SYNC_POLICY_PATH") or DEFAULT_SYNC_POLICY_PATH
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("sync policy must be a YAML object")
    return parse_sync_policy(data)


def parse_sync_policy(data: dict[str, object]) -> SyncPolicy:
    policy_version = _required_str(data, "policy_version")

    batch_raw = _required_obj(data, "batch")
    batch = BatchPolicy(
        limit=_required_positive_int(batch_raw, "limit"),
        min_delay_between_syncs_ms=_required_non_negative_int(batch_raw, "min_delay_between_syncs_ms"),
        max_attempts=_required_positive_int(batch_raw, "max_attempts"),
    )

    invoices_raw = _required_obj(data, "invoices")
    invoices = InvoicePolicy(
        due_days=_required_non_negative_int(invoices_raw, "due_days"),
        currency=_required_str(invoices_raw, "currency"),
        default_tax_type=_required_str(invoices_raw, "default_tax_type"),
        default_revenue_account_code=_required_str(invoices_raw, "default_revenue_account_code"),
        discount_account_code=_required_str(invoices_raw, "discount_account_code"),
    )
    if len(invoices.currency) != 3 or not invoices.currency.isupper():
        raise ValueError("invoices.currency must be an ISO 4217 code, e.g. 'USD'")

    payments_raw = _required_obj(data, "payments")
    payments = PaymentPolicy(
        default_bank_account_code=_required_str(payments_raw, "default_bank_account_code"),
    )

    markers = tuple(marker.lower() for marker in _required_str_list(data, "rate_limit_markers"))
    if not markers:
        raise ValueError("rate_limit_markers must contain at least one marker")

    installments_raw = _required_obj(data, "installments")
    installments = InstallmentPolicy(
        retry_interval_hours=_required_non_negative_int(installments_raw, "retry_interval_hours"),
        max_attempts=_required_positive_int(installments_raw, "max_attempts"),
    )

    return SyncPolicy(
        policy_version=policy_version,
        batch=batch,
        invoices=invoices,
        payments=payments,
        rate_limit_markers=markers,
        installments=installments,
    )


def _required_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} is required and must be non-empty string")
    return value


def _required_non_negative_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"{key} is required and must be non-negative integer")
    return value


def _required_positive_int(data: dict[str, object], key: str) -> int:
    value = _required_non_negative_int(data, key)
    if value == 0:
        raise ValueError(f"{key} must be > 0")
    return value


def _required_obj(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"{key} is required and must be object")
    return value


def _required_str_list(data: dict[str, object], key: str) -> list[str]:
    values = data.get(key)
    if not isinstance(values, list):
        raise ValueError(f"{key} is required and must be list")
    result: list[str] = []
    for value in values:
        if not isinstance(value, str) or not value:
            raise ValueError(f"{key} must contain non-empty strings")
        result.append(value)
    return result
