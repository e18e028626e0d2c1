"""In-process readers-writer lock between imports and storage cleanup.

Import transactions hold it shared; the cleanup (deletion and VACUUM)
holds it exclusive. A waiting cleanup keeps new imports from starting so it
is not starved by a steady stream of jobs. Across processes the PostgreSQL
advisory lock in :mod:`catalog_import.db.storage_backend` plays the same role.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

logger = structlog.get_logger(__name__)


class CatalogWriteLock:
    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        """Number of import transactions currently holding the lock."""
        return self._readers

    @property
    def locked_exclusive(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer and not self._writers_waiting)
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._condition:
            self._writers_waiting += 1
            if self._readers:
                logger.info("catalog_cleanup_waiting_for_imports", open_imports=self._readers)
            try:
                await self._condition.wait_for(lambda: not self._writer and not self._readers)
            finally:
                self._writers_waiting -= 1
                # a cancelled waiter must not leave readers blocked
                self._condition.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()
