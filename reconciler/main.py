import asyncio
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

import uvicorn
from fastapi import FastAPI

from common.db import dispose_db_engine, init_db_engine
from common.logger import Level, Logger
from reconciler.api import create_app
from reconciler.config import ReconcilerConfig, load_config
from reconciler.service import ReconciliationService
from reconciler.stores import SqlCollectionStore, SqlDriverDirectory, SqlLedgerStore


def build_service(cfg: ReconcilerConfig) -> ReconciliationService:
    return ReconciliationService.build(
        collections=SqlCollectionStore(),
        directory=SqlDriverDirectory(default_country_code=cfg.default_country_code),
        ledger_store=SqlLedgerStore(),
        policy=cfg.policy,
        tenant_policies=cfg.tenant_policies,
        lookup_timeout_seconds=cfg.lookup_timeout_seconds,
        retry_interval_seconds=cfg.retry_interval_seconds,
        retry_base_delay_seconds=cfg.retry_base_delay_seconds,
        retry_max_delay_seconds=cfg.retry_max_delay_seconds,
        retry_max_attempts=cfg.retry_max_attempts,
    )


def build_app(cfg: ReconcilerConfig) -> FastAPI:
    init_db_engine(cfg.database_url)
    service = build_service(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        stop_event = asyncio.Event()
        retry_task = asyncio.create_task(service.run_forever(stop_event))
        Logger.info("Reconciler started, retry interval %ss", cfg.retry_interval_seconds)
        try:
            yield
        finally:
            stop_event.set()
            retry_task.cancel()
            try:
                await retry_task
            except asyncio.CancelledError:
                pass
            await dispose_db_engine()

    return create_app(
        service,
        mpesa_tz=ZoneInfo(cfg.mpesa_timezone),
        default_country_code=cfg.default_country_code,
        lifespan=lifespan,
    )


def main() -> None:
    Logger.configure("reconciler", level=Level.INFO)
    Logger.silence("sqlalchemy.engine", "uvicorn.access", level=Level.WARNING)

    cfg = load_config()
    app = build_app(cfg)
    uvicorn.run(app, host=cfg.http_host, port=cfg.http_port, log_config=None)


if __name__ == "__main__":
    main()
