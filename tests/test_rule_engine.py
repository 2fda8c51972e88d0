from __future__ import annotations

import pytest

from clobber.policy.errors import MalformedRule
from clobber.policy.models import Recommendation, Rule, RuleKind, StateUpdate
from clobber.policy.rule_engine import (
    consolidate,
    desired_state,
    diff_room,
    entity_matches,
    parse_rule,
    pick_winner,
)
from clobber.policy.rule_store import RuleStore

from helpers import rule_event

A = "!a:example.org"
B = "!b:example.org"


def _store(*events) -> RuleStore:
    store = RuleStore()
    for event in events:
        store.upsert(parse_rule(event))
    store.set_active_lists({A, B})
    return store


def test_parse_rule_maps_event_types_and_aliases() -> None:
    assert parse_rule(rule_event(A, "@u:x")).rule_kind is RuleKind.BAN_ENTITY
    assert parse_rule(rule_event(A, "!r:x", kind="m.policy.rule.room")).rule_kind is RuleKind.BAN_ROOM
    assert parse_rule(rule_event(A, "evil.tld", kind="m.room.rule.server")).rule_kind is RuleKind.SERVER_ACL_DENY
    legacy = parse_rule(rule_event(A, "@u:x", kind="org.matrix.mjolnir.rule.user", recommendation="org.matrix.mjolnir.ban"))
    assert legacy.recommendation is Recommendation.BAN
    assert legacy.list_id == A


def test_parse_rule_treats_cleared_content_as_unban() -> None:
    rule = parse_rule(rule_event(A, "@u:x", recommendation=None))
    assert rule.recommendation is Recommendation.UNBAN
    assert rule.reason is None


@pytest.mark.parametrize(
    "event",
    [
        rule_event(A, "@u:x", kind="m.policy.rule.emoji"),
        rule_event(A, ""),
        rule_event(A, "@u :x"),
        rule_event(A, "@u:x", recommendation="m.mute"),
    ],
)
def test_parse_rule_rejects_malformed(event) -> None:
    with pytest.raises(MalformedRule):
        parse_rule(event)


@pytest.mark.parametrize("content", [["m.ban"], "m.ban", None, 7])
def test_parse_rule_rejects_content_that_is_not_an_object(content) -> None:
    update = StateUpdate.from_event(A, {
        "type": "m.policy.rule.user",
        "state_key": "@u:x",
        "content": content,
        "origin_server_ts": 1_000,
        "event_id": "$garbage",
    })

    with pytest.raises(MalformedRule):
        parse_rule(update)


def test_event_without_content_parses_as_unban() -> None:
    update = StateUpdate.from_event(A, {"type": "m.policy.rule.user", "state_key": "@u:x", "event_id": "$r"})
    assert parse_rule(update).recommendation is Recommendation.UNBAN


def test_entity_matches_user_and_server_globs() -> None:
    assert entity_matches("@*:evil.tld", "@spam:evil.tld")
    assert not entity_matches("@*:evil.tld", "@spam:good.tld")
    assert entity_matches("*.evil.tld", "@spam:bots.evil.tld")
    assert entity_matches("evil.tld", "@spam:evil.tld")
    assert not entity_matches("evil.tld", "@evil.tld:good.tld")


def test_conflict_winner_is_independent_of_ingestion_order() -> None:
    early = rule_event(A, "@evil:x", reason="early", ts=1_000)
    late = rule_event(B, "@evil:x", reason="late", ts=2_000)

    for events in ((early, late), (late, early)):
        desired = desired_state(_store(*events).snapshot(), {A, B})
        assert desired[(RuleKind.BAN_ENTITY, "@evil:x")].reason == "late"


def test_ties_break_on_smallest_list_id() -> None:
    rules = [
        Rule(B, RuleKind.BAN_ENTITY, "@u:x", Recommendation.BAN, 5, "$b"),
        Rule(A, RuleKind.BAN_ENTITY, "@u:x", Recommendation.BAN, 5, "$a"),
    ]
    assert pick_winner(rules).list_id == A


def test_unban_only_lifts_enforcement_without_a_competing_ban() -> None:
    only_unban = _store(rule_event(A, "@u:x", recommendation="m.unban"))
    assert consolidate(only_unban.snapshot().active_rules({A, B})) == {}

    contested = _store(
        rule_event(A, "@u:x", recommendation="m.unban", ts=2_000),
        rule_event(B, "@u:x", recommendation="m.ban", ts=1_000),
    )
    winner = consolidate(contested.snapshot().active_rules({A, B}))[(RuleKind.BAN_ENTITY, "@u:x")]
    assert winner.list_id == B


def test_glob_targets_expand_over_members_only() -> None:
    store = _store(rule_event(A, "@*:evil.tld"), rule_event(A, "@named:evil.tld", ts=900))
    desired = desired_state(store.snapshot(), {A}, members={"@bot1:evil.tld", "@friend:good.tld"})

    assert set(desired) == {
        (RuleKind.BAN_ENTITY, "@bot1:evil.tld"),
        (RuleKind.BAN_ENTITY, "@named:evil.tld"),
    }


def test_diff_orders_revokes_before_applies_and_skips_unchanged() -> None:
    keep = Rule(A, RuleKind.BAN_ENTITY, "@keep:x", Recommendation.BAN, 1, "$k")
    gone = Rule(A, RuleKind.BAN_ENTITY, "@gone:x", Recommendation.BAN, 1, "$g")
    new = Rule(A, RuleKind.SERVER_ACL_DENY, "evil.tld", Recommendation.BAN, 1, "$n")
    cached = {(RuleKind.BAN_ENTITY, "@keep:x"): keep, (RuleKind.BAN_ENTITY, "@gone:x"): gone}
    desired = {(RuleKind.BAN_ENTITY, "@keep:x"): keep, (RuleKind.SERVER_ACL_DENY, "evil.tld"): new}

    actions = diff_room("!r1:x", desired, cached)

    assert [(a.op, a.entity) for a in actions] == [("revoke", "@gone:x"), ("apply", "evil.tld")]


def test_ownership_change_reapplies_once() -> None:
    old = Rule(A, RuleKind.BAN_ENTITY, "@u:x", Recommendation.BAN, 1, "$old", reason="old")
    new = Rule(B, RuleKind.BAN_ENTITY, "@u:x", Recommendation.BAN, 2, "$new", reason="new")

    actions = diff_room("!r1:x", {(RuleKind.BAN_ENTITY, "@u:x"): new}, {(RuleKind.BAN_ENTITY, "@u:x"): old})

    assert len(actions) == 1
    assert actions[0].op == "apply" and actions[0].rule is new


def test_server_name_user_rules_expand_over_members() -> None:
    store = _store(rule_event(A, "evil.tld"))
    desired = desired_state(store.snapshot(), {A}, members={"@bot1:evil.tld", "@evil.tld:good.tld"})

    assert set(desired) == {(RuleKind.BAN_ENTITY, "@bot1:evil.tld")}
    assert desired_state(store.snapshot(), {A}) == {}
