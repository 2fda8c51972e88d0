from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ..observability import observability
from ..services.backoff import RetryPolicy
from ..services.stats import RuntimeStats
from ..services.work_queue import QueuePolicy, RoomWorkQueue
from .errors import ConflictError, ExecError, ForbiddenError, NetworkError, RateLimitedError
from .executor import EnforcementExecutor
from .models import Ack, EnforcementAction, EnforcementKey, PassResult, RoomState, RoomStatus, Rule, RuleKind
from .registry import ListRegistry, MemberIndex, ProtectedRoomRegistry, resolve_watches
from .rule_engine import desired_state, diff_room
from .rule_store import RuleStore

log = logging.getLogger("clobber.reconciler")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class _ActionCancelled(Exception):
    """The action left scope (room removed or list unwatched) before dispatch."""


class _BackingOff(Exception):
    """A retryable failure; the room is retried after `delay` seconds."""

    def __init__(self, error: ExecError, delay: float) -> None:
        super().__init__(str(error))
        self.error = error
        self.delay = delay


@dataclass
class _RoomRuntime:
    state: RoomState = "idle"
    backoff_until: Optional[float] = None
    reason: Optional[str] = None
    forbidden: bool = False
    # What this engine has confirmed as enforced in the room
    cached: dict[EnforcementKey, Rule] = field(default_factory=dict)
    # Failed attempts per pending action, carried across retry passes
    attempts: dict[tuple[str, EnforcementKey], int] = field(default_factory=dict)
    retry: Optional["asyncio.Task[None]"] = None


class Reconciler:
    """Drives each protected room toward the consolidated active policy.

    Rooms are processed concurrently by a worker pool, but a single room is
    never in two passes at once. The cached enforcement snapshot for a room
    only changes after the executor acknowledges an action.
    """

    def __init__(
        self,
        *,
        rules: RuleStore,
        lists: ListRegistry,
        rooms: ProtectedRoomRegistry,
        members: MemberIndex,
        executor: EnforcementExecutor,
        retry: RetryPolicy = RetryPolicy(),
        queue_policy: QueuePolicy = QueuePolicy(),
        stats: Optional[RuntimeStats] = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.rules = rules
        self.lists = lists
        self.rooms = rooms
        self.members = members
        self.executor = executor
        self.retry = retry
        self.stats = stats or RuntimeStats()
        self._clock = clock
        self._sleep = sleep
        self._queue = RoomWorkQueue(queue_policy, self._handle)
        self._runtime: dict[str, _RoomRuntime] = {}
        self._retries: set[asyncio.Task[None]] = set()
        self.generation = 0

    # Lifecycle

    def start(self) -> None:
        self._queue.start()

    async def stop(self) -> None:
        retries = list(self._retries)
        for task in retries:
            task.cancel()
        await asyncio.gather(*retries, return_exceptions=True)
        await self._queue.stop()

    async def drain(self, *, retries: bool = True) -> None:
        """Wait until every scheduled pass (and any rerun it triggers) is done.

        With `retries` the rooms waiting out a backoff are waited for too.
        """
        while True:
            await self._queue.join()
            if not retries or not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    # Scheduling

    def _room(self, room_id: str) -> _RoomRuntime:
        rt = self._runtime.get(room_id)
        if rt is None:
            rt = self._runtime[room_id] = _RoomRuntime()
        return rt

    def request_room(self, room_id: str) -> bool:
        if room_id not in self.rooms:
            return False
        if self._room(room_id).forbidden:
            log.debug("Skipping %s: waiting for permission change", room_id)
            return False
        return self._queue.submit(room_id)

    def request_list(self, list_id: str) -> list[str]:
        scope = self.rooms_for_list(list_id)
        for room_id in scope:
            self.request_room(room_id)
        return scope

    def request_all(self) -> None:
        for room_id in self.rooms.room_ids():
            self.request_room(room_id)

    def rooms_for_list(self, list_id: str) -> list[str]:
        """Rooms that watch the list, or still enforce something it set."""
        out = []
        for room in self.rooms.rooms():
            if list_id in resolve_watches(room, self.lists):
                out.append(room.room_id)
                continue
            rt = self._runtime.get(room.room_id)
            if rt and any(rule.list_id == list_id for rule in rt.cached.values()):
                out.append(room.room_id)
        return out

    def drop_room(self, room_id: str) -> None:
        """Stop enforcing in a room. Past actions are left in place."""
        self._queue.cancel(room_id)
        rt = self._runtime.pop(room_id, None)
        if rt is not None:
            if rt.retry is not None:
                rt.retry.cancel()
            self.generation += 1
        log.info("Room %s is no longer protected", room_id)

    def reevaluate(self, room_id: str) -> bool:
        """Clear a forbidden room after the bot's membership or power changed."""
        rt = self._runtime.get(room_id)
        if rt is None or not rt.forbidden:
            return False
        rt.forbidden = False
        rt.state = "idle"
        rt.reason = None
        log.info("Re-evaluating %s after a permission change", room_id)
        return self.request_room(room_id)

    # Queries

    def room_status(self, room_id: str) -> RoomStatus:
        rt = self._runtime.get(room_id)
        if rt is None:
            return RoomStatus(room_id=room_id)
        return RoomStatus(room_id=room_id, state=rt.state, backoff_until=rt.backoff_until, reason=rt.reason)

    def cached_snapshot(self, room_id: str) -> dict[EnforcementKey, Rule]:
        rt = self._runtime.get(room_id)
        return dict(rt.cached) if rt else {}

    # Passes

    async def _handle(self, room_id: str) -> None:
        await self.run_pass(room_id)

    async def run_pass(self, room_id: str) -> PassResult:
        room = self.rooms.get(room_id)
        if room is None:
            return PassResult(room_id=room_id, ok=True)
        rt = self._room(room_id)
        if rt.forbidden:
            return PassResult(room_id=room_id, ok=False, errors=["forbidden"])
        if rt.backoff_until is not None and self._clock() < rt.backoff_until:
            # The scheduled retry resubmits the room
            log.debug("Skipping %s: backing off until %.1f", room_id, rt.backoff_until)
            return PassResult(room_id=room_id, ok=False, errors=["backoff"])

        rt.state = "diffing"
        rt.backoff_until = None
        snapshot = self.rules.snapshot()
        list_ids = resolve_watches(room, self.lists)
        # Users this room already bans stay candidates for glob rules after they leave
        members = self.members.members(room_id) | {
            entity for kind, entity in rt.cached if kind is RuleKind.BAN_ENTITY
        }
        desired = desired_state(snapshot, list_ids, members)
        actions = diff_room(room_id, desired, rt.cached)
        self.stats.passes_run += 1
        pending = {(a.op, a.key) for a in actions}
        rt.attempts = {k: n for k, n in rt.attempts.items() if k in pending}

        if not actions:
            self._settle(rt, failed=0)
            return PassResult(room_id=room_id, ok=True)

        log.info("Reconciling %s: %d action(s) from %d list(s)", room_id, len(actions), len(list_ids))
        started = time.monotonic()
        rt.state = "applying"
        rt.reason = None
        applied = revoked = skipped = deferred = failed = 0
        errors: list[str] = []
        backing_off = False

        for n, action in enumerate(actions):
            try:
                ack = await self._dispatch(rt, action)
            except _ActionCancelled:
                skipped += 1
                self.stats.actions_discarded += 1
                continue
            except _BackingOff as e:
                if self._runtime.get(room_id) is not rt:
                    skipped += len(actions) - n
                    self.stats.actions_discarded += len(actions) - n
                    break
                # The rest of the pass waits for the retry; the worker is released now
                deferred = len(actions) - n
                errors.append(f"{action.op}:{action.entity}:{e.error}")
                self._back_off(room_id, rt, action, e)
                backing_off = True
                break
            except ForbiddenError as e:
                rt.forbidden = True
                rt.reason = f"forbidden: {e}"
                failed += 1
                self.stats.actions_failed += 1
                errors.append(f"{action.op}:{action.entity}:{e}")
                log.warning("Missing permissions in %s; enforcement paused: %s", room_id, e)
                break

            if ack is None:
                failed += 1
                self.stats.actions_failed += 1
                errors.append(f"{action.op}:{action.entity}:{rt.reason}")
                continue

            if self._runtime.get(room_id) is not rt:
                # Room was dropped while the call was in flight
                self.stats.actions_discarded += 1
                return PassResult(room_id=room_id, ok=True, attempted=len(actions), skipped=len(actions))

            self._record(rt, action)
            if action.op == "apply":
                applied += 1
                self.stats.actions_applied += 1
            else:
                revoked += 1
                self.stats.actions_revoked += 1

        if not backing_off:
            self._settle(rt, failed=failed)
        observability.log_reconcile(room_id, len(actions), failed, (time.monotonic() - started) * 1000)
        return PassResult(
            room_id=room_id,
            ok=failed == 0 and not backing_off,
            attempted=len(actions),
            applied=applied,
            revoked=revoked,
            skipped=skipped,
            deferred=deferred,
            failed=failed,
            errors=errors,
        )

    def _settle(self, rt: _RoomRuntime, *, failed: int) -> None:
        rt.backoff_until = None
        if rt.forbidden or failed:
            rt.state = "persistent_warning"
        else:
            rt.state = "idle"
            rt.reason = None

    def _in_scope(self, rt: _RoomRuntime, action: EnforcementAction) -> bool:
        room = self.rooms.get(action.room_id)
        if room is None or self._runtime.get(action.room_id) is not rt:
            return False
        if action.op == "apply":
            list_id = action.rule.list_id
            if not self.rules.is_active(list_id) or list_id not in resolve_watches(room, self.lists):
                # A fresh pass computes the revokes instead
                self.request_room(action.room_id)
                return False
        return True

    async def _dispatch(self, rt: _RoomRuntime, action: EnforcementAction) -> Optional[Ack]:
        """Run one action. Returns None once it has failed for good.

        ACL conflicts are retried at once with a fresh read. Other retryable
        failures raise _BackingOff; the attempt count survives into the
        retry pass so `max_attempts` bounds the action, not the pass.
        """
        key = (action.op, action.key)
        conflicts = 0
        while True:
            if not self._in_scope(rt, action):
                raise _ActionCancelled()

            retry_after: Optional[float] = None
            try:
                ack = await self.executor.execute(action)
            except ConflictError as e:
                conflicts += 1
                if conflicts <= self.retry.conflict_retries:
                    log.debug("ACL conflict in %s, retrying with a fresh read (%d)", action.room_id, conflicts)
                    continue
                error: ExecError = NetworkError(f"ACL kept changing: {e}")
            except RateLimitedError as e:
                error = e
                retry_after = e.retry_after
            except NetworkError as e:
                error = e
            except ForbiddenError:
                raise
            except ExecError as e:
                rt.attempts.pop(key, None)
                rt.reason = f"{action.op} {action.entity} failed: {e}"
                log.warning("Giving up on %s %s in %s: %s", action.op, action.entity, action.room_id, e)
                return None
            else:
                rt.attempts.pop(key, None)
                return ack

            attempt = rt.attempts.get(key, 0) + 1
            if attempt >= self.retry.max_attempts:
                rt.attempts.pop(key, None)
                rt.reason = f"{action.op} {action.entity} failed after {attempt} attempts: {error}"
                log.warning(
                    "Giving up on %s %s in %s after %d attempts: %s",
                    action.op, action.entity, action.room_id, attempt, error,
                )
                return None
            rt.attempts[key] = attempt
            raise _BackingOff(error, self.retry.delay_for(attempt, retry_after))

    def _back_off(self, room_id: str, rt: _RoomRuntime, action: EnforcementAction, backoff: _BackingOff) -> None:
        rt.state = "backoff"
        rt.backoff_until = self._clock() + backoff.delay
        rt.reason = f"{action.op} {action.entity} failed: {backoff.error}"
        log.info(
            "%s %s in %s failed (%s); retrying in %.1fs",
            action.op, action.entity, room_id, type(backoff.error).__name__, backoff.delay,
        )
        if rt.retry is not None:
            rt.retry.cancel()
        task = asyncio.create_task(self._retry_later(room_id, rt, backoff.delay), name=f"clobber-retry-{room_id}")
        rt.retry = task
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _retry_later(self, room_id: str, rt: _RoomRuntime, delay: float) -> None:
        await self._sleep(delay)
        if self._runtime.get(room_id) is not rt:
            return
        rt.retry = None
        rt.backoff_until = None
        self.request_room(room_id)

    def _record(self, rt: _RoomRuntime, action: EnforcementAction) -> None:
        if action.op == "apply":
            rt.cached[action.key] = action.rule
        else:
            rt.cached.pop(action.key, None)
        self.generation += 1

    # Persistence

    def room_ids_with_state(self) -> list[str]:
        return sorted(self._runtime)

    def dump_room(self, room_id: str) -> dict[str, Any]:
        rt = self._runtime.get(room_id)
        entries = []
        for (kind, entity), rule in sorted((rt.cached if rt else {}).items(), key=lambda kv: (kv[0][0].value, kv[0][1])):
            entries.append({"kind": kind.value, "entity": entity, "rule": rule.to_dict()})
        return {"enforced": entries}

    def load_room(self, room_id: str, data: dict[str, Any]) -> None:
        rt = self._room(room_id)
        rt.cached = {
            (RuleKind(e["kind"]), str(e["entity"])): Rule.from_dict(e["rule"])
            for e in data.get("enforced") or []
        }
