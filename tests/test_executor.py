from __future__ import annotations

import asyncio

import pytest

from clobber.policy.errors import ConflictError, NetworkError
from clobber.policy.executor import EnforcementExecutor
from clobber.policy.models import Recommendation, Rule, RuleKind

from helpers import FakeMatrixClient

ROOM = "!r1:example.org"
ACL = (ROOM, "m.room.server_acl", "")


def _rule(kind: RuleKind, target: str) -> Rule:
    return Rule("!spam:example.org", kind, target, Recommendation.BAN, 1_000, "$v", reason="spam")


def test_acl_apply_keeps_existing_entries(client: FakeMatrixClient) -> None:
    client.state[ACL] = {"allow": ["*"], "deny": ["old.tld"], "allow_ip_literals": False}
    executor = EnforcementExecutor(client)

    ack = asyncio.run(executor.apply(ROOM, _rule(RuleKind.SERVER_ACL_DENY, "evil.tld")))

    assert not ack.noop
    assert client.state[ACL] == {"allow": ["*"], "deny": ["old.tld", "evil.tld"], "allow_ip_literals": False}


def test_acl_apply_and_revoke_are_noops_when_already_converged(client: FakeMatrixClient) -> None:
    client.state[ACL] = {"allow": ["*"], "deny": ["evil.tld"]}
    executor = EnforcementExecutor(client)
    rule = _rule(RuleKind.SERVER_ACL_DENY, "evil.tld")

    assert asyncio.run(executor.apply(ROOM, rule)).noop
    assert asyncio.run(executor.revoke(ROOM, _rule(RuleKind.SERVER_ACL_DENY, "other.tld"))).noop
    assert client.calls_of("set_room_state") == []

    assert not asyncio.run(executor.revoke(ROOM, rule)).noop
    assert client.state[ACL]["deny"] == []


def test_acl_change_between_reads_raises_conflict(client: FakeMatrixClient) -> None:
    client.state[ACL] = {"allow": ["*"], "deny": []}

    def concurrent_edit() -> None:
        client.state[ACL] = {"allow": ["*"], "deny": ["someone-else.tld"]}
        client.on_state_read = None

    client.on_state_read = concurrent_edit
    executor = EnforcementExecutor(client)

    with pytest.raises(ConflictError):
        asyncio.run(executor.apply(ROOM, _rule(RuleKind.SERVER_ACL_DENY, "evil.tld")))
    assert client.calls_of("set_room_state") == []


def test_room_ban_rules_are_advisory(client: FakeMatrixClient) -> None:
    executor = EnforcementExecutor(client)

    ack = asyncio.run(executor.apply(ROOM, _rule(RuleKind.BAN_ROOM, "!bad:example.org")))

    assert ack.noop
    assert client.calls == []


def test_ban_entity_uses_expanded_entity(client: FakeMatrixClient) -> None:
    executor = EnforcementExecutor(client)

    asyncio.run(executor.apply(ROOM, _rule(RuleKind.BAN_ENTITY, "@*:evil.tld"), "@bot:evil.tld"))
    asyncio.run(executor.revoke(ROOM, _rule(RuleKind.BAN_ENTITY, "@*:evil.tld"), "@bot:evil.tld"))

    assert client.calls == [
        ("ban_user", ROOM, "@bot:evil.tld", "spam"),
        ("unban_user", ROOM, "@bot:evil.tld"),
    ]


def test_slow_calls_time_out_as_network_errors() -> None:
    class SlowClient(FakeMatrixClient):
        async def ban_user(self, room_id, user_id, reason=None):
            await asyncio.sleep(1)

    executor = EnforcementExecutor(SlowClient(), call_timeout=0.01)

    with pytest.raises(NetworkError):
        asyncio.run(executor.apply(ROOM, _rule(RuleKind.BAN_ENTITY, "@evil:domain.tld")))


def test_new_acl_allows_every_server(client: FakeMatrixClient) -> None:
    executor = EnforcementExecutor(client)

    asyncio.run(executor.apply(ROOM, _rule(RuleKind.SERVER_ACL_DENY, "evil.tld")))

    assert client.state[ACL] == {"allow": ["*"], "deny": ["evil.tld"]}


def test_existing_acl_without_allow_list_is_left_restrictive(client: FakeMatrixClient) -> None:
    client.state[ACL] = {"deny": [], "allow_ip_literals": False}
    executor = EnforcementExecutor(client)

    asyncio.run(executor.apply(ROOM, _rule(RuleKind.SERVER_ACL_DENY, "evil.tld")))

    assert client.state[ACL] == {"deny": ["evil.tld"], "allow_ip_literals": False}
    assert "allow" not in client.state[ACL]
