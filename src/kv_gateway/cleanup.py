"""Background removal of physically expired records.

Reads already hide expired records; the sweeper only bounds storage growth
for backends that keep them around (the relational and memory backends).
"""

import asyncio
from typing import Any, Protocol, runtime_checkable

from kv_gateway.exceptions import StorageError
from kv_gateway.observability import emit_counter, get_logger

logger = get_logger(__name__)


@runtime_checkable
class SupportsCleanup(Protocol):
    """A storage backend that can drop expired records."""

    async def cleanup_expired(self) -> int:
        ...


class ExpiredRecordSweeper:
    """Periodically calls ``cleanup_expired`` on a storage backend.

    Example:
        sweeper = ExpiredRecordSweeper(storage, interval_seconds=300)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, storage: SupportsCleanup, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.storage = storage
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> int:
        """Run one cleanup pass. Storage failures are logged, not raised."""
        try:
            removed = await self.storage.cleanup_expired()
        except StorageError as e:
            logger.warning("Expired record sweep failed", error=e)
            return 0
        emit_counter("kv.cleanup.removed", value=removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep_once()

    def start(self) -> None:
        """Start sweeping in the background on the running loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="kv-expired-sweeper")
        logger.info("Expired record sweeper started", context={"interval_s": self.interval_seconds})

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
