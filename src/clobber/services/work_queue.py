from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

log = logging.getLogger("clobber.queue")

RoomHandler = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class QueuePolicy:
    workers: int = 4
    max_queue_size: int = 10_000


class RoomWorkQueue:
    """Bounded worker pool for reconciliation work.

    Work is keyed by room id. A room is never processed by two workers at
    once; a request that arrives while the room is queued is coalesced, and
    one that arrives while it is running schedules a single rerun.
    """

    def __init__(self, policy: QueuePolicy, handler: RoomHandler) -> None:
        self._policy = policy
        self._handler = handler
        self._q: asyncio.Queue[str] = asyncio.Queue(maxsize=policy.max_queue_size)
        self._pending: set[str] = set()
        self._active: set[str] = set()
        self._rerun: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []

    def start(self) -> None:
        if self._workers:
            return
        for n in range(max(1, self._policy.workers)):
            self._workers.append(asyncio.create_task(self._run(), name=f"clobber-reconcile-{n}"))
        log.info(
            "RoomWorkQueue started (workers=%s max_size=%s)",
            max(1, self._policy.workers),
            self._policy.max_queue_size,
        )

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        log.info("RoomWorkQueue stopped")

    def submit(self, room_id: str) -> bool:
        """Schedule `room_id`. Returns False when coalesced into existing work."""
        if room_id in self._active:
            self._rerun.add(room_id)
            return False
        if room_id in self._pending:
            return False
        try:
            self._q.put_nowait(room_id)
        except asyncio.QueueFull as e:
            raise RuntimeError("RoomWorkQueue is full; refusing to enqueue more work") from e
        self._pending.add(room_id)
        return True

    def cancel(self, room_id: str) -> None:
        """Drop not-yet-started work for a room. Running work is left to finish."""
        self._pending.discard(room_id)
        self._rerun.discard(room_id)

    async def join(self) -> None:
        await self._q.join()

    async def _run(self) -> None:
        while True:
            room_id = await self._q.get()
            try:
                if room_id not in self._pending:
                    continue
                self._pending.discard(room_id)
                self._active.add(room_id)
                try:
                    await self._handler(room_id)
                except Exception:
                    log.exception("Reconciliation of %s failed", room_id)
                finally:
                    self._active.discard(room_id)
                if room_id in self._rerun:
                    self._rerun.discard(room_id)
                    self.submit(room_id)
            finally:
                self._q.task_done()
