from __future__ import annotations

from functools import cache
from pathlib import Path


SQL_DIR = Path(__file__).with_name("sql")


@cache
def load_sql(name: str) -> str:
    return (SQL_DIR / name).read_text(encoding="utf-8").strip()


def load_table_sql(template: str, *, record_type: str) -> str:
    """Loads the per-table variant of a statement, e.g. transition_{table}.sql."""
    suffix = {"invoice": "invoices", "payment": "payments"}.get(record_type)
    if suffix is None:
        raise ValueError(f"unknown staging record type: {record_type}")
    return load_sql(template.format(table=suffix, record=record_type))
