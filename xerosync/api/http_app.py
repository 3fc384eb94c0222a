from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from xerosync.api.auth import require_admin_token, require_cron_secret
from xerosync.api.handlers import admin, cron, staging
from xerosync.api.handlers.deps import ApiDeps
from xerosync.api.schemas import (
    AbandonedResponse,
    CompletePurchaseRequest,
    CreatePaymentPlanRequest,
    CreatePurchaseStagingRequest,
    CreateRefundStagingRequest,
    CronFailureResponse,
    CronSyncResponse,
    ErrorResponse,
    ExistingStagingResponse,
    FailedItemsRequest,
    HealthResponse,
    IgnoreFailedResponse,
    ManualSyncResponse,
    PaymentPlanStagedResponse,
    PaymentPlansRunResponse,
    PromotedResponse,
    ReadyResponse,
    RefundCompletedResponse,
    RefundPreviewRequest,
    RefundPreviewResponse,
    RefundStagedResponse,
    RetryFailedResponse,
    StagingCreatedResponse,
    SyncStatusResponse,
    WorkerMetrics,
)
from xerosync.domain.errors import DomainInvariantError, DomainValidationError
from xerosync.workers.loop import WorkerLoop
from xerosync.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if api_deps is not None:
            api_deps.sync_manager.force_stop()

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="xerosync", version="0.1.0", lifespan=lifespan)

    def _deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    def _admin_deps(authorization: str | None) -> ApiDeps:
        deps = _deps()
        require_admin_token(authorization, admin_api_token=deps.admin_api_token)
        return deps

    def _cron_deps(authorization: str | None) -> ApiDeps:
        deps = _deps()
        require_cron_secret(authorization, cron_secret=deps.cron_secret)
        return deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        state = worker_state or WorkerRuntimeState()
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )

        return ReadyResponse(
            status="ready",
            role=role,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=WorkerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                busy_ticks_total=state.busy_ticks_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
                released_total=state.released_total,
            ),
        )

    @app.post(
        "/cron/xero-sync",
        response_model=CronSyncResponse,
        responses={**ERROR_RESPONSES, 500: {"model": CronFailureResponse}},
        tags=["Cron"],
    )
    async def cron_xero_sync(authorization: str | None = Header(default=None)) -> CronSyncResponse | JSONResponse:
        deps = _cron_deps(authorization)
        try:
            return await cron.run_xero_sync_handler(deps)
        except Exception as exc:
            logger.exception("cron xero sync failed", extra={"role": role, "run_id": run_id, "operation": "cron_sync"})
            failure = CronFailureResponse(error=str(exc), timestamp=deps.clock())
            return JSONResponse(status_code=500, content=failure.model_dump(mode="json"))

    @app.post(
        "/cron/payment-plans",
        response_model=PaymentPlansRunResponse,
        responses={**ERROR_RESPONSES, 500: {"model": CronFailureResponse}},
        tags=["Cron"],
    )
    async def cron_payment_plans(
        authorization: str | None = Header(default=None),
    ) -> PaymentPlansRunResponse | JSONResponse:
        deps = _cron_deps(authorization)
        try:
            return await cron.run_payment_plans_handler(deps)
        except Exception as exc:
            logger.exception(
                "cron payment plans failed",
                extra={"role": role, "run_id": run_id, "operation": "process_due_installments"},
            )
            failure = CronFailureResponse(error=str(exc), timestamp=deps.clock())
            return JSONResponse(status_code=500, content=failure.model_dump(mode="json"))

    @app.post("/xero/retry-failed", response_model=RetryFailedResponse, responses=ERROR_RESPONSES, tags=["Xero"])
    async def retry_failed(
        request: FailedItemsRequest,
        authorization: str | None = Header(default=None),
    ) -> RetryFailedResponse:
        deps = _admin_deps(authorization)
        try:
            return await admin.retry_failed_handler(deps, request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except DomainInvariantError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/xero/ignore-failed", response_model=IgnoreFailedResponse, responses=ERROR_RESPONSES, tags=["Xero"])
    async def ignore_failed(
        request: FailedItemsRequest,
        authorization: str | None = Header(default=None),
    ) -> IgnoreFailedResponse:
        deps = _admin_deps(authorization)
        try:
            return await admin.ignore_failed_handler(deps, request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except DomainInvariantError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/xero/manual-sync", response_model=ManualSyncResponse, responses=ERROR_RESPONSES, tags=["Xero"])
    async def manual_sync(authorization: str | None = Header(default=None)) -> ManualSyncResponse:
        return await admin.manual_sync_handler(_admin_deps(authorization))

    @app.get("/xero/status", response_model=SyncStatusResponse, responses=ERROR_RESPONSES, tags=["Xero"])
    async def sync_status(authorization: str | None = Header(default=None)) -> SyncStatusResponse:
        return await admin.sync_status_handler(_admin_deps(authorization))

    @app.post(
        "/staging/purchases",
        response_model=StagingCreatedResponse,
        status_code=201,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def create_purchase_staging(
        request: CreatePurchaseStagingRequest,
        authorization: str | None = Header(default=None),
    ) -> StagingCreatedResponse:
        deps = _admin_deps(authorization)
        try:
            return await staging.create_purchase_staging_handler(deps, request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get(
        "/staging/purchases/{payment_id}",
        response_model=ExistingStagingResponse,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def get_purchase_staging(
        payment_id: str,
        authorization: str | None = Header(default=None),
    ) -> ExistingStagingResponse:
        return await staging.get_purchase_staging_handler(_admin_deps(authorization), payment_id=payment_id)

    @app.post(
        "/staging/purchases/{payment_id}/complete",
        response_model=PromotedResponse,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def complete_purchase(
        payment_id: str,
        request: CompletePurchaseRequest,
        authorization: str | None = Header(default=None),
    ) -> PromotedResponse:
        return await staging.complete_purchase_handler(
            _admin_deps(authorization),
            payment_id=payment_id,
            request=request,
        )

    @app.post(
        "/staging/purchases/{payment_id}/abandon",
        response_model=AbandonedResponse,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def abandon_purchase(
        payment_id: str,
        authorization: str | None = Header(default=None),
    ) -> AbandonedResponse:
        return await staging.abandon_purchase_handler(_admin_deps(authorization), payment_id=payment_id)

    @app.post(
        "/staging/refunds/preview",
        response_model=RefundPreviewResponse,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def preview_refund(
        request: RefundPreviewRequest,
        authorization: str | None = Header(default=None),
    ) -> RefundPreviewResponse:
        deps = _admin_deps(authorization)
        try:
            return await staging.preview_refund_handler(deps, request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post(
        "/staging/refunds",
        response_model=RefundStagedResponse,
        status_code=201,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def create_refund(
        request: CreateRefundStagingRequest,
        authorization: str | None = Header(default=None),
    ) -> RefundStagedResponse:
        deps = _admin_deps(authorization)
        try:
            return await staging.create_refund_handler(deps, request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post(
        "/staging/refunds/{refund_id}/complete",
        response_model=RefundCompletedResponse,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def complete_refund(
        refund_id: str,
        authorization: str | None = Header(default=None),
    ) -> RefundCompletedResponse:
        return await staging.complete_refund_handler(_admin_deps(authorization), refund_id=refund_id)

    @app.post(
        "/staging/payment-plans",
        response_model=PaymentPlanStagedResponse,
        status_code=201,
        responses=ERROR_RESPONSES,
        tags=["Staging"],
    )
    async def create_payment_plan(
        request: CreatePaymentPlanRequest,
        authorization: str | None = Header(default=None),
    ) -> PaymentPlanStagedResponse:
        deps = _admin_deps(authorization)
        try:
            return await staging.create_payment_plan_handler(deps, request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    return app
