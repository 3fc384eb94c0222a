from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_invoice_staging_id() -> str:
    return f"inv_{ulid_module.new().str}"


def new_payment_staging_id() -> str:
    return f"pay_{ulid_module.new().str}"
