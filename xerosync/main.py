from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import uuid

import uvicorn

from xerosync.api.http_app import build_app
from xerosync.logging_setup import configure_logging
from xerosync.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from xerosync.services.bootstrap import RuntimeContainer, build_runtime_container
from xerosync.workers.runner import worker_runtime_settings_from_env

logger = logging.getLogger("runtime")

API_PORT = 8000
WORKER_PORT = 8100


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Xero staging and sync runtime")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Worker roles only: run a single tick and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable code reload (dev mode)",
    )
    return parser.parse_args(argv)


def _app_for(role: RuntimeRole, container: RuntimeContainer, *, run_id: str) -> object:
    return build_app(
        role=role.name,
        run_id=run_id,
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> object:
    """uvicorn factory used by --reload; the role comes from APP_ROLE."""
    role = validate_role(os.getenv("APP_ROLE", "api"))
    configure_logging()
    return _app_for(role, build_runtime_container(role), run_id=str(uuid.uuid4()))


async def run_single_tick(container: RuntimeContainer, *, role: RuntimeRole, run_id: str) -> bool:
    worker_loop = container.worker_loop
    if worker_loop is None:
        raise ValueError(f"role '{role.name}' has no worker loop")
    worker_loop.processing_timeout_seconds = worker_runtime_settings_from_env().processing_timeout_seconds

    extra = {"role": role.name, "service": role.name, "run_id": run_id, "operation": worker_loop.job_name}
    if container.on_startup is not None:
        await container.on_startup()
    try:
        released = await worker_loop.release_stale()
        did_work = await worker_loop.run_once()
    finally:
        if container.on_shutdown is not None:
            await container.on_shutdown()

    logger.info("single tick finished: did_work=%s released=%s", did_work, released, extra=extra)
    return did_work


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    if args.once and not role.is_worker:
        sys.stderr.write(f"ERROR: --once requires a worker role, got '{role.name}'\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    extra = {"role": role.name, "service": role.name, "run_id": run_id}
    logger.info("runtime initialized", extra=extra)

    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra=extra)
        return 0

    if args.once:
        asyncio.run(run_single_tick(build_runtime_container(role), role=role, run_id=run_id))
        return 0

    port = args.port if args.port is not None else (WORKER_PORT if role.is_worker else API_PORT)
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "xerosync.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
        return 0

    app = _app_for(role, build_runtime_container(role), run_id=run_id)
    uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
