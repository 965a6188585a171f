import logging

import asyncpg

logger = logging.getLogger("payments.db")


async def create_pool(database_url: str, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    pool = await asyncpg.create_pool(
        database_url,
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
    )
    logger.info("db_pool_created", extra={"min_size": min_size, "max_size": max_size})
    return pool
