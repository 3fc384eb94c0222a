from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from xerosync.workers.loop import WorkerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 1000
    idle_backoff_ms: int = 60000
    error_backoff_ms: int = 5000
    processing_timeout_seconds: int = 600


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    busy_ticks_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    released_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=_env_int("WORKER_POLL_INTERVAL_MS", 1000),
        idle_backoff_ms=_env_int("WORKER_IDLE_BACKOFF_MS", 60000),
        error_backoff_ms=_env_int("WORKER_ERROR_BACKOFF_MS", 5000),
        processing_timeout_seconds=_env_int("WORKER_PROCESSING_TIMEOUT_SECONDS", 600),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


async def _tick(
    worker_loop: WorkerLoop,
    *,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    log_extra: dict[str, str],
    state: WorkerRuntimeState | None,
) -> int:
    """Runs one release-then-job tick and returns the delay before the next one, in ms."""
    try:
        released = await worker_loop.release_stale()
        if released:
            logger.warning("released %s stale processing rows", released, extra=log_extra)
        did_work = await worker_loop.run_once()
    except Exception:
        logger.exception("worker tick error", extra=log_extra)
        if state is not None:
            state.ticks_total += 1
            state.errors_total += 1
        return settings.error_backoff_ms

    if state is not None:
        state.ticks_total += 1
        state.released_total += released
        if did_work:
            state.busy_ticks_total += 1
        else:
            state.idle_ticks_total += 1
    return settings.poll_interval_ms if did_work else settings.idle_backoff_ms


async def run_worker_until_stopped(
    *,
    worker_loop: WorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    worker_loop.processing_timeout_seconds = settings.processing_timeout_seconds
    log_extra = {"role": role, "service": role, "run_id": run_id, "operation": worker_loop.job_name}

    if state is not None:
        state.started = True
    logger.info("worker loop started", extra=log_extra)

    while not stop_event.is_set():
        delay_ms = await _tick(worker_loop, settings=settings, logger=logger, log_extra=log_extra, state=state)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_extra)
    if state is not None:
        state.stopped = True
