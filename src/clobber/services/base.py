from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import aiosqlite


class BaseService(ABC):
    """Base class for SQLite-backed services."""

    def __init__(self, sqlite_path: str) -> None:
        self._path = sqlite_path
        self._logger = logging.getLogger(f"clobber.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        """Initialize the database schema."""
        async with aiosqlite.connect(self._path) as db:
            await self._create_tables(db)
            await db.commit()

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        """Create the necessary database tables."""

    @abstractmethod
    def _from_row(self, row: aiosqlite.Row) -> Any:
        """Convert a database row to the service's data type."""
