# reconciliation_poller.py
# Store polling fallback for observers that may have missed an entryUpdated
# notification (e.g. they subscribed after the background merge published).

import asyncio
import time
from typing import Awaitable, Callable, Optional

from loguru import logger

import config
from entry_store import EntryStore
from models import Entry

Predicate = Callable[[Entry], bool]
SuccessCallback = Callable[[Entry], None]


class PollHandle:
    """Handle on a running poll. stop() cancels it; wait() resolves to True on success."""

    def __init__(self, entry_id: str, task: "asyncio.Task[bool]"):
        self.entry_id = entry_id
        self.task = task

    @property
    def done(self) -> bool:
        return self.task.done()

    def stop(self) -> None:
        if not self.task.done():
            logger.debug(f"Polling for '{self.entry_id}' stopped by caller.")
            self.task.cancel()

    async def wait(self) -> bool:
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return False
            raise


class ReconciliationPoller:
    def __init__(
        self,
        store: EntryStore,
        interval: float = config.POLL_INTERVAL_SECONDS,
        timeout: float = config.POLL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    def poll_until_complete(
        self,
        entry_id: str,
        is_complete: Predicate,
        on_success: SuccessCallback,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        on_timeout: Optional[Callable[[], None]] = None,
    ) -> PollHandle:
        """Re-reads the entry every interval until is_complete holds or timeout elapses.

        on_success fires at most once, with the complete entry. On timeout polling
        stops silently (on_timeout is optional) and no further reads are made.
        """
        interval = self.interval if interval is None else interval
        timeout = self.timeout if timeout is None else timeout
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        task = asyncio.create_task(
            self._run(entry_id, is_complete, on_success, interval, timeout, on_timeout),
            name=f"poll:{entry_id}",
        )
        return PollHandle(entry_id, task)

    async def _run(
        self,
        entry_id: str,
        is_complete: Predicate,
        on_success: SuccessCallback,
        interval: float,
        timeout: float,
        on_timeout: Optional[Callable[[], None]],
    ) -> bool:
        deadline = self._clock() + timeout
        reads = 0
        logger.info(f"Polling '{entry_id}' every {interval}s for up to {timeout}s.")
        while True:
            await self._sleep(interval)
            if self._clock() >= deadline:
                logger.info(f"Polling timeout for '{entry_id}' after {reads} read(s).")
                if on_timeout is not None:
                    on_timeout()
                return False
            reads += 1
            try:
                entry = await self.store.get(entry_id)
            except Exception as e:
                logger.warning(f"Poll read {reads} for '{entry_id}' failed: {e}")
                continue
            if entry is not None and is_complete(entry):
                logger.info(f"Entry '{entry_id}' complete after {reads} poll read(s).")
                on_success(entry)
                return True
