"""Cooperative cancellation token for import runs."""
import asyncio

from catalog_import.errors.exceptions import ImportCancelledError


class CancellationToken:
    """Stop signal owned by one job and observed by its pipeline.

    The pipeline calls :meth:`checkpoint` between phases and chunks. Work in
    progress (a chunk being written) always finishes before cancellation is
    observed.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise ImportCancelledError once cancellation was requested."""
        if self._event.is_set():
            raise ImportCancelledError(self.job_id)

    async def checkpoint(self) -> None:
        """Yield to the event loop, then honour a pending cancellation."""
        await asyncio.sleep(0)
        self.raise_if_cancelled()

    async def wait(self) -> None:
        await self._event.wait()
