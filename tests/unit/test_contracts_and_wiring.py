import asyncio

import pytest

from xerosync.clients.stub import StubPaymentProcessor, StubXeroClient
from xerosync.domain.contracts import (
    CLAIM_SQL_CONTRACT,
    PaymentProcessor,
    StagingRepository,
    XeroClient,
)
from xerosync.repositories.stub import InMemoryStagingRepository
from xerosync.roles import validate_role
from xerosync.services.bootstrap import build_runtime_container
from xerosync.services.settings import AppSettings, app_settings_from_env
from xerosync.workers.loop import WorkerLoop
from tests.staging_seed import make_tenant, make_user, stage_paid_purchase


@pytest.mark.unit
def test_claim_contract_documents_skip_locked_semantics() -> None:
    assert "FOR UPDATE SKIP LOCKED" in CLAIM_SQL_CONTRACT


@pytest.mark.unit
def test_stubs_satisfy_runtime_protocols() -> None:
    assert isinstance(InMemoryStagingRepository(), StagingRepository)
    assert isinstance(StubXeroClient(), XeroClient)
    assert isinstance(StubPaymentProcessor(), PaymentProcessor)


@pytest.mark.unit
def test_settings_treat_blank_values_as_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "   ")
    monkeypatch.setenv("CRON_SECRET", " cron-secret ")
    monkeypatch.delenv("ADMIN_API_TOKEN", raising=False)

    assert app_settings_from_env() == AppSettings(database_url=None, cron_secret="cron-secret")


@pytest.mark.unit
def test_api_role_has_no_worker_loop() -> None:
    container = build_runtime_container(validate_role("api"), settings=AppSettings(cron_secret="s"))

    assert container.worker_loop is None
    assert container.on_startup is None
    assert container.api_deps.cron_secret == "s"
    assert isinstance(container.repository, InMemoryStagingRepository)


@pytest.mark.unit
def test_xero_sync_worker_pushes_pending_rows() -> None:
    container = build_runtime_container(validate_role("worker-xero-sync"), settings=AppSettings())
    assert isinstance(container.worker_loop, WorkerLoop)
    assert container.worker_loop.release_stale_processing is True
    repository = container.repository
    assert isinstance(repository, InMemoryStagingRepository)
    repository.add_user(make_user())
    repository.add_tenant(make_tenant())

    async def _run() -> tuple[bool, bool]:
        await stage_paid_purchase(repository, container.policy)
        first = await container.worker_loop.run_once()
        # Nothing left to push, and the minimum delay also holds the next run back.
        second = await container.worker_loop.run_once()
        return first, second

    first, second = asyncio.run(_run())

    assert first is True
    assert second is False
    assert all(row.sync_status == "synced" for row in repository.invoices.values())
    assert all(row.sync_status == "synced" for row in repository.payments.values())


@pytest.mark.unit
def test_payment_plans_worker_is_idle_without_due_installments() -> None:
    container = build_runtime_container(validate_role("worker-payment-plans"), settings=AppSettings())
    assert container.worker_loop is not None
    assert container.worker_loop.job_name == "process_due_installments"
    assert container.worker_loop.release_stale_processing is False

    assert asyncio.run(container.worker_loop.run_once()) is False
    assert asyncio.run(container.worker_loop.release_stale()) == 0
