from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from xerosync.domain.contracts import StagingRepository

# A job returns True when the tick did useful work.
Job = Callable[[], Awaitable[bool]]


@dataclass
class WorkerLoop:
    role: str
    job_name: str
    repository: StagingRepository
    job: Job
    release_stale_processing: bool = False
    processing_timeout_seconds: int = 600

    async def release_stale(self) -> int:
        if not self.release_stale_processing:
            return 0
        return await self.repository.release_stale_processing(older_than_seconds=self.processing_timeout_seconds)

    async def run_once(self) -> bool:
        return await self.job()
