from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from xerosync.api.handlers.deps import ApiDeps
from xerosync.clients.stripe_processor import build_stripe_processor_from_env
from xerosync.clients.stub import StubPaymentProcessor, StubXeroClient
from xerosync.domain.contracts import PaymentProcessor, StagingRepository, XeroClient
from xerosync.domain.sync_policy import SyncPolicy, load_sync_policy
from xerosync.lib.xero import build_xero_client
from xerosync.lib.xero.auth import xero_credentials_from_env
from xerosync.repositories.postgres import AsyncpgPoolManager, PostgresStagingRepository
from xerosync.repositories.stub import InMemoryStagingRepository
from xerosync.roles import RuntimeRole
from xerosync.services.admin import FailedRecordAdmin
from xerosync.services.batch_sync import XeroBatchSyncManager
from xerosync.services.payment_plans import PaymentPlanService
from xerosync.services.refunds import RefundStagingService
from xerosync.services.settings import AppSettings, app_settings_from_env
from xerosync.services.staging import StagingWriter
from xerosync.workers.jobs import build_payment_plans_job, build_xero_sync_job
from xerosync.workers.loop import WorkerLoop

logger = logging.getLogger("runtime")


@dataclass
class RuntimeContainer:
    repository: StagingRepository
    xero: XeroClient
    payment_processor: PaymentProcessor
    policy: SyncPolicy
    api_deps: ApiDeps
    worker_loop: WorkerLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    *,
    settings: AppSettings | None = None,
    policy: SyncPolicy | None = None,
) -> RuntimeContainer:
    settings = settings or app_settings_from_env()
    policy = policy or load_sync_policy()
    startup_hooks: list[Callable[[], Awaitable[None]]] = []
    shutdown_hooks: list[Callable[[], Awaitable[None]]] = []

    repository: StagingRepository
    xero: XeroClient
    payment_processor: PaymentProcessor
    if settings.database_url:
        pool_manager = AsyncpgPoolManager(dsn=settings.database_url)
        repository = PostgresStagingRepository(pool_manager=pool_manager)
        startup_hooks.append(pool_manager.startup)

        credentials = xero_credentials_from_env()
        if credentials is not None:
            http_client = build_xero_client(repository=repository, credentials=credentials)
            shutdown_hooks.append(http_client.aclose)
            xero = http_client
        else:
            # Without credentials every run sees an unreachable tenant and leaves rows pending.
            logger.warning("XERO_CLIENT_ID/XERO_CLIENT_SECRET not set; xero sync is disabled")
            xero = StubXeroClient(connection_ok=False)

        stripe_processor = build_stripe_processor_from_env()
        if stripe_processor is not None:
            payment_processor = stripe_processor
        else:
            logger.warning("STRIPE_SECRET_KEY not set; installment charges will be declined")
            payment_processor = StubPaymentProcessor(decline_all="Payment processor is not configured")
        shutdown_hooks.append(pool_manager.shutdown)
    else:
        repository = InMemoryStagingRepository()
        xero = StubXeroClient()
        payment_processor = StubPaymentProcessor()

    sync_manager = XeroBatchSyncManager(repository=repository, xero=xero, policy=policy)
    payment_plans = PaymentPlanService(repository=repository, processor=payment_processor, policy=policy)
    api_deps = ApiDeps(
        repository=repository,
        sync_manager=sync_manager,
        staging=StagingWriter(repository=repository, policy=policy),
        refunds=RefundStagingService(repository=repository, policy=policy),
        payment_plans=payment_plans,
        admin=FailedRecordAdmin(repository=repository),
        cron_secret=settings.cron_secret,
        admin_api_token=settings.admin_api_token,
    )

    worker_loop: WorkerLoop | None = None
    if role.name == "worker-xero-sync":
        worker_loop = WorkerLoop(
            role=role.name,
            job_name="batch_sync",
            repository=repository,
            job=build_xero_sync_job(sync_manager),
            release_stale_processing=True,
        )
    elif role.name == "worker-payment-plans":
        worker_loop = WorkerLoop(
            role=role.name,
            job_name="process_due_installments",
            repository=repository,
            job=build_payment_plans_job(payment_plans),
        )

    return RuntimeContainer(
        repository=repository,
        xero=xero,
        payment_processor=payment_processor,
        policy=policy,
        api_deps=api_deps,
        worker_loop=worker_loop,
        on_startup=_chain(startup_hooks),
        on_shutdown=_chain(shutdown_hooks),
    )


def _chain(hooks: list[Callable[[], Awaitable[None]]]) -> Callable[[], Awaitable[None]] | None:
    if not hooks:
        return None

    async def _run_all() -> None:
        for hook in hooks:
            await hook()

    return _run_all
