import asyncio

from common.db import create_schema, dispose_db_engine, init_db_engine
from common.logger import Level, Logger
from reconciler.config import load_config


async def main() -> None:
    cfg = load_config()
    init_db_engine(cfg.database_url)
    try:
        await create_schema()
        Logger.info("Schema is up to date")
    finally:
        await dispose_db_engine()


if __name__ == "__main__":
    Logger.configure("migrate", level=Level.INFO)
    asyncio.run(main())
