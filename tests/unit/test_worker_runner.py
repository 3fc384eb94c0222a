import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from xerosync.repositories.stub import InMemoryStagingRepository
from xerosync.workers.loop import WorkerLoop
from xerosync.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)


async def _idle() -> bool:
    return False


@pytest.mark.unit
def test_worker_runtime_settings_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_POLL_INTERVAL_MS", "50")
    monkeypatch.setenv("WORKER_IDLE_BACKOFF_MS", "100")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "150")
    monkeypatch.setenv("WORKER_PROCESSING_TIMEOUT_SECONDS", "45")

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings(
        poll_interval_ms=50,
        idle_backoff_ms=100,
        error_backoff_ms=150,
        processing_timeout_seconds=45,
    )


@pytest.mark.unit
def test_worker_runtime_settings_fall_back_on_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_POLL_INTERVAL_MS", "abc")
    monkeypatch.setenv("WORKER_IDLE_BACKOFF_MS", "0")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "-10")
    monkeypatch.delenv("WORKER_PROCESSING_TIMEOUT_SECONDS", raising=False)

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings()


@pytest.mark.unit
def test_worker_loop_run_once_reports_job_result() -> None:
    calls: list[str] = []

    async def _job() -> bool:
        calls.append("tick")
        return True

    loop = WorkerLoop(
        role="worker-xero-sync",
        job_name="batch_sync",
        repository=InMemoryStagingRepository(),
        job=_job,
    )

    assert asyncio.run(loop.run_once()) is True
    assert calls == ["tick"]


@pytest.mark.unit
def test_worker_loop_releases_stale_processing_rows() -> None:
    async def _run() -> None:
        repository = InMemoryStagingRepository()
        invoice_id = await repository.create_invoice_staging(
            payment_id=None,
            invoice_type="ACCREC",
            invoice_status="AUTHORISED",
            total_amount=0,
            discount_amount=0,
            net_amount=0,
            sync_status="pending",
            staging_metadata={"user_id": "user-1"},
            line_items=[],
        )
        await repository.claim_pending_invoices(limit=10)
        repository.invoices[invoice_id].claimed_at = datetime.now(tz=UTC) - timedelta(minutes=20)

        disabled = WorkerLoop(role="worker-payment-plans", job_name="noop", repository=repository, job=_idle)
        assert await disabled.release_stale() == 0

        loop = WorkerLoop(
            role="worker-xero-sync",
            job_name="batch_sync",
            repository=repository,
            job=_idle,
            release_stale_processing=True,
            processing_timeout_seconds=600,
        )
        assert await loop.release_stale() == 1
        assert repository.invoices[invoice_id].sync_status == "pending"

    asyncio.run(_run())


@dataclass
class _FlakyLoop:
    calls: int = 0
    processing_timeout_seconds: int = 0

    @property
    def job_name(self) -> str:
        return "batch_sync"

    async def release_stale(self) -> int:
        return 0

    async def run_once(self) -> bool:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("boom")
        return False


@pytest.mark.unit
def test_runner_survives_errors_and_continues() -> None:
    flaky_loop = _FlakyLoop()
    stop_event = asyncio.Event()
    settings = WorkerRuntimeSettings(poll_interval_ms=1, idle_backoff_ms=1, error_backoff_ms=1)
    state = WorkerRuntimeState()

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=flaky_loop,  # pyright: ignore[reportArgumentType]
                role="worker-xero-sync",
                run_id="run-1",
                stop_event=stop_event,
                settings=settings,
                logger=logging.getLogger("test"),
                state=state,
            )
        )
        await asyncio.sleep(0.02)
        stop_event.set()
        await task

    asyncio.run(_run())
    assert flaky_loop.calls >= 2
    assert flaky_loop.processing_timeout_seconds == 600
    assert state.started is True
    assert state.stopped is True
    assert state.ticks_total >= 2
    assert state.errors_total >= 1
    assert state.idle_ticks_total >= 1


@pytest.mark.unit
def test_runner_releases_stale_rows_before_tick() -> None:
    class _CountingRepository(InMemoryStagingRepository):
        release_calls: int = 0

        async def release_stale_processing(self, *, older_than_seconds: int) -> int:
            self.release_calls += 1
            self.last_timeout = older_than_seconds
            return 2 if self.release_calls == 1 else 0

    repository = _CountingRepository()
    loop = WorkerLoop(
        role="worker-xero-sync",
        job_name="batch_sync",
        repository=repository,
        job=_idle,
        release_stale_processing=True,
    )
    stop_event = asyncio.Event()
    settings = WorkerRuntimeSettings(
        poll_interval_ms=1,
        idle_backoff_ms=1,
        error_backoff_ms=1,
        processing_timeout_seconds=120,
    )
    state = WorkerRuntimeState()

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=loop,
                role="worker-xero-sync",
                run_id="run-release",
                stop_event=stop_event,
                settings=settings,
                logger=logging.getLogger("test"),
                state=state,
            )
        )
        await asyncio.sleep(0.01)
        stop_event.set()
        await task

    asyncio.run(_run())
    assert repository.release_calls >= 1
    assert repository.last_timeout == 120
    assert state.released_total == 2
