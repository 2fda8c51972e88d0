from __future__ import annotations

import logging
from typing import List

import aiosqlite

from .services.base import BaseService

log = logging.getLogger("clobber.database")


async def initialize_database(sqlite_path: str, stores: List[BaseService]) -> None:
    """Apply SQLite settings and create every store's tables."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA temp_store=MEMORY")
            await db.commit()

        log.info("Applied SQLite settings")

        for store in stores:
            await store.init()
            log.info(f"Initialized {store.__class__.__name__}")

    except Exception as e:
        log.error(f"Failed to initialize database: {e}")
        raise
