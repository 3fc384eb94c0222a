from pathlib import Path

import pytest
import yaml

from xerosync.domain.sync_policy import (
    DEFAULT_SYNC_POLICY_PATH,
    SyncPolicy,
    load_sync_policy,
    parse_sync_policy,
)


def _policy_data() -> dict[str, object]:
    return yaml.safe_load(DEFAULT_SYNC_POLICY_PATH.read_text(encoding="utf-8"))


@pytest.mark.unit
def test_default_policy_file_matches_documented_defaults() -> None:
    policy = load_sync_policy(file_path=DEFAULT_SYNC_POLICY_PATH)

    assert policy.policy_version == "sync-policy:v1"
    assert policy.batch.limit == 50
    assert policy.batch.min_delay_between_syncs_ms == 5000
    assert policy.batch.max_attempts == 3
    assert policy.invoices.due_days == 30
    assert policy.invoices.currency == "USD"
    assert policy.invoices.default_tax_type == "NONE"
    assert policy.payments.default_bank_account_code == "090"
    assert policy.installments.retry_interval_hours == 24
    assert "too many requests" in policy.rate_limit_markers


@pytest.mark.unit
def test_policy_path_can_be_overridden_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data = _policy_data()
    data["batch"] = {"limit": 5, "min_delay_between_syncs_ms": 0, "max_attempts": 2}
    custom = tmp_path / "policy.yaml"
    custom.write_text(yaml.safe_dump(data), encoding="utf-8")
    monkeypatch.setenv("SYNC_POLICY_PATH", str(custom))

    policy = load_sync_policy()

    assert policy.batch.limit == 5
    assert policy.batch.max_attempts == 2


@pytest.mark.unit
def test_rate_limit_markers_are_lowercased() -> None:
    data = _policy_data()
    data["rate_limit_markers"] = ["Rate Limit", "HTTP 429"]

    policy = parse_sync_policy(data)

    assert policy.rate_limit_markers == ("rate limit", "http 429")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("section", "key", "value", "message"),
    [
        ("batch", "limit", 0, "limit must be > 0"),
        ("batch", "max_attempts", "3", "max_attempts is required"),
        ("invoices", "currency", "usd", "ISO 4217"),
        ("installments", "retry_interval_hours", -1, "non-negative integer"),
    ],
)
def test_invalid_policy_values_rejected(section: str, key: str, value: object, message: str) -> None:
    data = _policy_data()
    section_data = dict(data[section])  # type: ignore[arg-type]
    section_data[key] = value
    data[section] = section_data

    with pytest.raises(ValueError, match=message):
        parse_sync_policy(data)


@pytest.mark.unit
def test_dataclass_defaults_match_policy_file() -> None:
    assert load_sync_policy(file_path=DEFAULT_SYNC_POLICY_PATH) == SyncPolicy()
