from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from .config import Settings
from .constants import (
    PROTECTED_ROOMS_TYPE,
    STATE_ROOM_PREFIX,
    STATE_SECTION_LISTS,
    STATE_SECTION_PROTECTED,
    STATE_SECTION_RULES,
    WATCHED_LISTS_TYPE,
)
from .observability import observability
from .policy.errors import SnapshotCorruptError
from .policy.executor import EnforcementExecutor
from .policy.ingestor import EventIngestor
from .policy.models import AccountDataUpdate, Redaction, RoomStatus, Rule, StateUpdate
from .policy.reconciler import Clock, Reconciler, Sleep
from .policy.registry import ListRegistry, MemberIndex, ProtectedRoomRegistry
from .policy.rule_store import RuleStore
from .services.backoff import RetryPolicy
from .services.state_store import EngineStateStore
from .services.stats import RuntimeStats
from .services.work_queue import QueuePolicy
from .transport.client import MatrixClient

log = logging.getLogger("clobber.engine")


class PolicyEngine:
    """Owns the stores and wires ingestion, reconciliation and persistence.

    Delivery code calls `ingest_state` / `ingest_account_data`; operators
    read `list_active_rules` and `room_status`. Everything else runs on
    the reconciler's worker pool.
    """

    def __init__(
        self,
        client: MatrixClient,
        *,
        state_store: Optional[EngineStateStore] = None,
        bot_user_id: Optional[str] = None,
        retry: RetryPolicy = RetryPolicy(),
        queue_policy: QueuePolicy = QueuePolicy(),
        call_timeout: float = 30.0,
        persist_interval: float = 5.0,
        protected_rooms_type: str = PROTECTED_ROOMS_TYPE,
        watched_lists_type: str = WATCHED_LISTS_TYPE,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.stats = RuntimeStats()
        self.rules = RuleStore()
        self.lists = ListRegistry()
        self.rooms = ProtectedRoomRegistry()
        self.members = MemberIndex()
        self.executor = EnforcementExecutor(client, call_timeout=call_timeout)
        self.reconciler = Reconciler(
            rules=self.rules,
            lists=self.lists,
            rooms=self.rooms,
            members=self.members,
            executor=self.executor,
            retry=retry,
            queue_policy=queue_policy,
            stats=self.stats,
            clock=clock,
            sleep=sleep,
        )
        self.ingestor = EventIngestor(
            rules=self.rules,
            lists=self.lists,
            rooms=self.rooms,
            members=self.members,
            reconciler=self.reconciler,
            bot_user_id=bot_user_id,
            protected_rooms_type=protected_rooms_type,
            watched_lists_type=watched_lists_type,
            stats=self.stats,
        )
        self.state_store = state_store
        self.persist_interval = persist_interval
        self._flushed_at = self._generations()
        self._flush_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: MatrixClient,
        *,
        state_store: Optional[EngineStateStore] = None,
        bot_user_id: Optional[str] = None,
    ) -> "PolicyEngine":
        return cls(
            client,
            state_store=state_store,
            bot_user_id=bot_user_id or settings.user_id or None,
            retry=settings.retry_policy(),
            queue_policy=settings.queue_policy(),
            call_timeout=settings.call_timeout_seconds,
            persist_interval=settings.persist_interval_seconds,
            protected_rooms_type=settings.protected_rooms_type,
            watched_lists_type=settings.watched_lists_type,
        )

    # Lifecycle

    async def start(self) -> None:
        if self.state_store is not None:
            await self.load()
        self.reconciler.start()
        if self.state_store is not None and self.persist_interval > 0:
            self._flush_task = asyncio.create_task(self._flush_loop(), name="clobber-flush")
        # Catch up on anything that changed while the engine was down
        self.reconciler.request_all()
        observability.log_startup_event("engine", "OK", {"rooms": len(self.rooms.room_ids())})

    async def stop(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.reconciler.stop()
        await self.flush()

    async def drain(self, *, retries: bool = True) -> None:
        await self.reconciler.drain(retries=retries)

    # Ingestion

    def ingest_state(self, update: StateUpdate) -> bool:
        return self.ingestor.ingest_state(update)

    def ingest_account_data(self, update: AccountDataUpdate) -> bool:
        return self.ingestor.ingest_account_data(update)

    def ingest_redaction(self, redaction: Redaction) -> bool:
        return self.ingestor.ingest_redaction(redaction)

    # Queries

    def list_active_rules(self, list_ref: str) -> list[Rule]:
        """Active rules of a list, addressed by list room id or shortcode."""
        list_id = self.lists.resolve(list_ref)
        if list_id is None:
            return []
        return self.rules.active_rules(list_id)

    def room_status(self, room_id: str) -> RoomStatus:
        return self.reconciler.room_status(room_id)

    # Persistence

    def _generations(self) -> tuple[int, int, int, int]:
        return (
            self.rules.generation,
            self.lists.generation,
            self.rooms.generation,
            self.reconciler.generation,
        )

    async def load(self) -> bool:
        """Restore persisted state. Returns False for a fresh database.

        Raises SnapshotCorruptError when anything fails verification; the
        engine must not enforce from a partial view.
        """
        assert self.state_store is not None
        sections = await self.state_store.load_all()
        if not sections:
            log.info("No persisted engine state; starting fresh")
            return False

        try:
            self.rules.load(sections.get(STATE_SECTION_RULES) or {})
            self.lists.load(sections.get(STATE_SECTION_LISTS) or {})
            self.rooms.load(sections.get(STATE_SECTION_PROTECTED) or {})
            restored = 0
            for key, payload in sections.items():
                if not key.startswith(STATE_ROOM_PREFIX):
                    continue
                room_id = key[len(STATE_ROOM_PREFIX):]
                if room_id in self.rooms:
                    self.reconciler.load_room(room_id, payload)
                    restored += 1
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SnapshotCorruptError(f"persisted engine state has an invalid shape: {e}") from e

        self.rules.set_active_lists(self.lists.watched_list_ids())
        self._flushed_at = self._generations()
        log.info(
            "Restored %d list(s), %d protected room(s), %d room snapshot(s)",
            len(self.rules.list_ids()), len(self.rooms.room_ids()), restored,
        )
        return True

    async def flush(self, *, force: bool = False) -> bool:
        """Write state if anything changed since the last flush."""
        if self.state_store is None:
            return False
        generations = self._generations()
        if not force and generations == self._flushed_at:
            return False

        sections: dict[str, Any] = {
            STATE_SECTION_RULES: self.rules.dump(),
            STATE_SECTION_LISTS: self.lists.dump(),
            STATE_SECTION_PROTECTED: self.rooms.dump(),
        }
        for room_id in self.reconciler.room_ids_with_state():
            sections[f"{STATE_ROOM_PREFIX}{room_id}"] = self.reconciler.dump_room(room_id)

        await self.state_store.save(sections, prune_prefix=STATE_ROOM_PREFIX)
        self._flushed_at = generations
        self.stats.snapshots_flushed += 1
        log.debug("Flushed engine state (%d section(s))", len(sections))
        return True

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.persist_interval)
            try:
                await self.flush()
            except Exception:
                log.exception("Failed to persist engine state")
