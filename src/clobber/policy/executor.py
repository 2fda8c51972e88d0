from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Optional, TypeVar

from ..constants import SERVER_ACL_EVENT_TYPE
from ..observability import observability
from ..transport.client import MatrixClient
from .errors import ConflictError, ExecError, NetworkError
from .models import Ack, ActionOp, EnforcementAction, Rule, RuleKind

log = logging.getLogger("clobber.executor")

T = TypeVar("T")


class EnforcementExecutor:
    """Issues the protocol-level moderation calls for enforcement actions.

    Success returns an Ack; every failure raises an ExecError subclass.
    Server ACL updates are a read-modify-write of one aggregate state
    object, so they are serialized per room.
    """

    def __init__(self, client: MatrixClient, *, call_timeout: float = 30.0) -> None:
        self.client = client
        self._timeout = call_timeout
        self._acl_locks: dict[str, asyncio.Lock] = {}

    def _acl_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._acl_locks.get(room_id)
        if lock is None:
            lock = self._acl_locks[room_id] = asyncio.Lock()
        return lock

    async def _call(self, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"protocol call timed out after {self._timeout}s") from e

    async def apply(self, room_id: str, rule: Rule, entity: Optional[str] = None) -> Ack:
        return await self._execute(room_id, rule, entity or rule.target, "apply")

    async def revoke(self, room_id: str, rule: Rule, entity: Optional[str] = None) -> Ack:
        return await self._execute(room_id, rule, entity or rule.target, "revoke")

    async def execute(self, action: EnforcementAction) -> Ack:
        return await self._execute(action.room_id, action.rule, action.entity, action.op)

    async def _execute(self, room_id: str, rule: Rule, entity: str, op: ActionOp) -> Ack:
        started = time.monotonic()
        operation = f"{op}:{rule.rule_kind.value}"
        try:
            if rule.rule_kind is RuleKind.BAN_ENTITY:
                if op == "apply":
                    await self._call(self.client.ban_user(room_id, entity, rule.reason))
                else:
                    await self._call(self.client.unban_user(room_id, entity))
                ack = Ack(room_id=room_id, entity=entity, op=op)

            elif rule.rule_kind is RuleKind.BAN_ROOM:
                # Cross-room bans are advisory only
                log.info("Room ban rule %s for %s noted in %s (advisory, no action)", op, entity, room_id)
                ack = Ack(room_id=room_id, entity=entity, op=op, noop=True)

            else:
                ack = await self._update_acl(room_id, entity, deny=(op == "apply"))

        except ExecError as e:
            observability.log_enforcement(
                operation, room_id, entity, success=False,
                duration_ms=(time.monotonic() - started) * 1000, error=e,
            )
            raise

        observability.log_enforcement(
            operation, room_id, entity, success=True, duration_ms=(time.monotonic() - started) * 1000
        )
        return ack

    async def _update_acl(self, room_id: str, server: str, *, deny: bool) -> Ack:
        op: ActionOp = "apply" if deny else "revoke"
        async with self._acl_lock(room_id):
            existing = await self._call(self.client.get_room_state(room_id, SERVER_ACL_EVENT_TYPE, ""))
            current: dict[str, Any] = existing or {}
            deny_list = [str(x) for x in current.get("deny") or []]

            if deny:
                if server in deny_list:
                    return Ack(room_id=room_id, entity=server, op=op, noop=True)
                deny_list.append(server)
            else:
                if server not in deny_list:
                    return Ack(room_id=room_id, entity=server, op=op, noop=True)
                deny_list = [d for d in deny_list if d != server]

            content = dict(current)
            content["deny"] = deny_list
            if existing is None:
                # A new ACL without an allow list would lock out every server
                content["allow"] = ["*"]

            fresh = await self._call(self.client.get_room_state(room_id, SERVER_ACL_EVENT_TYPE, "")) or {}
            if fresh != current:
                raise ConflictError(f"server ACL in {room_id} changed during update")

            await self._call(self.client.set_room_state(room_id, SERVER_ACL_EVENT_TYPE, "", content))
            return Ack(room_id=room_id, entity=server, op=op)
