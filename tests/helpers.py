from __future__ import annotations

import asyncio
import itertools
from typing import Any, Optional

from clobber.constants import PROTECTED_ROOMS_TYPE, WATCHED_LISTS_TYPE
from clobber.engine import PolicyEngine
from clobber.policy.models import AccountDataUpdate, StateUpdate
from clobber.services.backoff import RetryPolicy
from clobber.services.work_queue import QueuePolicy

_event_ids = itertools.count(1)


class FakeClock:
    """Virtual time: sleeping advances the clock instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeMatrixClient:
    """In-memory homeserver for the outbound calls the executor makes.

    Every call is recorded with the virtual time it happened at. Errors
    queued with `fail()` are raised by the next calls of that method.
    """

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.calls: list[tuple[Any, ...]] = []
        self.call_times: list[float] = []
        self.state: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.banned: dict[str, set[str]] = {}
        self._failures: dict[str, list[Exception]] = {}
        self.state_reads = 0
        # Called after every state read, before the value is returned
        self.on_state_read: Optional[Any] = None

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        self.call_times.append(self.clock() if self.clock else 0.0)
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)

    def calls_of(self, method: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == method]

    async def ban_user(self, room_id: str, user_id: str, reason: Optional[str] = None) -> None:
        self._record("ban_user", room_id, user_id, reason)
        self.banned.setdefault(room_id, set()).add(user_id)

    async def unban_user(self, room_id: str, user_id: str) -> None:
        self._record("unban_user", room_id, user_id)
        self.banned.setdefault(room_id, set()).discard(user_id)

    async def get_room_state(self, room_id: str, event_type: str, state_key: str) -> Optional[dict[str, Any]]:
        self.state_reads += 1
        queue = self._failures.get("get_room_state")
        if queue:
            raise queue.pop(0)
        content = self.state.get((room_id, event_type, state_key))
        if self.on_state_read is not None:
            self.on_state_read()
        return dict(content) if content is not None else None

    async def set_room_state(self, room_id: str, event_type: str, state_key: str, content: dict[str, Any]) -> str:
        self._record("set_room_state", room_id, event_type, content)
        self.state[(room_id, event_type, state_key)] = dict(content)
        return f"$set{next(_event_ids)}"


def rule_event(
    list_id: str,
    target: str,
    *,
    kind: str = "m.policy.rule.user",
    recommendation: Optional[str] = "m.ban",
    reason: str = "spam",
    ts: int = 1_000,
    event_id: Optional[str] = None,
) -> StateUpdate:
    content: dict[str, Any] = {}
    if recommendation is not None:
        content = {"entity": target, "recommendation": recommendation, "reason": reason}
    return StateUpdate(
        event_type=kind,
        room_id=list_id,
        state_key=target,
        content=content,
        origin_ts=ts,
        version_token=event_id or f"$rule{next(_event_ids)}",
        sender="@mod:example.org",
    )


def member_event(room_id: str, user_id: str, membership: str = "join", *, ts: int = 1_000) -> StateUpdate:
    return StateUpdate(
        event_type="m.room.member",
        room_id=room_id,
        state_key=user_id,
        content={"membership": membership},
        origin_ts=ts,
        version_token=f"$member{next(_event_ids)}",
    )


def watched_lists(mapping: dict[str, str]) -> AccountDataUpdate:
    return AccountDataUpdate(type=WATCHED_LISTS_TYPE, content={"lists": dict(mapping)})


def protected_rooms(rooms: Any) -> AccountDataUpdate:
    return AccountDataUpdate(type=PROTECTED_ROOMS_TYPE, content={"rooms": rooms})


def make_engine(
    client: FakeMatrixClient,
    clock: Optional[FakeClock] = None,
    *,
    retry: RetryPolicy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=60.0, conflict_retries=2),
    **kwargs: Any,
) -> PolicyEngine:
    clock = clock or client.clock or FakeClock()
    sleep = kwargs.pop("sleep", clock.sleep)
    queue_policy = kwargs.pop("queue_policy", QueuePolicy(workers=2, max_queue_size=100))
    return PolicyEngine(
        client,
        bot_user_id="@clobber:example.org",
        retry=retry,
        queue_policy=queue_policy,
        call_timeout=5.0,
        clock=clock,
        sleep=sleep,
        **kwargs,
    )
