from __future__ import annotations

import fnmatch
from typing import Iterable, Mapping, Optional

from ..constants import (
    BAN_RECOMMENDATIONS,
    RULE_ROOM_TYPES,
    RULE_SERVER_TYPES,
    RULE_TYPE_PREFIXES,
    RULE_USER_TYPES,
    UNBAN_RECOMMENDATIONS,
)
from .errors import MalformedRule
from .models import EnforcementAction, EnforcementKey, Recommendation, Rule, RuleKind, StateUpdate
from .rule_store import RuleSnapshot

_KIND_BY_TYPE: dict[str, RuleKind] = {
    **{t: RuleKind.BAN_ENTITY for t in RULE_USER_TYPES},
    **{t: RuleKind.BAN_ROOM for t in RULE_ROOM_TYPES},
    **{t: RuleKind.SERVER_ACL_DENY for t in RULE_SERVER_TYPES},
}


def is_rule_event(event_type: str) -> bool:
    return event_type.startswith(RULE_TYPE_PREFIXES)


def parse_rule(update: StateUpdate) -> Rule:
    """Turn a rule state update into a Rule, or raise MalformedRule."""

    def _bad(msg: str) -> MalformedRule:
        return MalformedRule(msg, event_type=update.event_type, room_id=update.room_id, state_key=update.state_key)

    kind = _KIND_BY_TYPE.get(update.event_type)
    if kind is None:
        raise _bad(f"unknown rule kind {update.event_type!r}")

    target = update.state_key
    if not target or target != target.strip() or any(c.isspace() for c in target):
        raise _bad("rule target must be a non-empty entity or glob")
    if not update.version_token:
        raise _bad("rule update has no version token")

    if not isinstance(update.content, dict):
        raise _bad(f"rule content must be an object, not {type(update.content).__name__}")
    content = update.content
    if not content:
        # Cleared or redacted rule
        recommendation = Recommendation.UNBAN
    else:
        raw = content.get("recommendation")
        if raw in BAN_RECOMMENDATIONS:
            recommendation = Recommendation.BAN
        elif raw in UNBAN_RECOMMENDATIONS:
            recommendation = Recommendation.UNBAN
        else:
            raise _bad(f"unsupported recommendation {raw!r}")

    reason = content.get("reason")
    return Rule(
        list_id=update.room_id,
        rule_kind=kind,
        target=target,
        recommendation=recommendation,
        origin_ts=int(update.origin_ts),
        source_version=update.version_token,
        reason=(str(reason) if isinstance(reason, str) and reason else None),
    )


def entity_matches(pattern: str, user_id: str) -> bool:
    """Match a user id against a ban-entity target.

    Targets starting with `@` match the whole user id; anything else is a
    server glob matched against the user's server name.
    """
    if pattern.startswith("@"):
        return fnmatch.fnmatchcase(user_id, pattern)
    _, _, server = user_id.partition(":")
    return bool(server) and fnmatch.fnmatchcase(server, pattern)


def is_member_pattern(rule: Rule) -> bool:
    """Ban-entity rules that are matched against room members.

    Only a literal `@user:server` target names a user; globs and bare
    server names are patterns.
    """
    return rule.rule_kind is RuleKind.BAN_ENTITY and (rule.is_glob or not rule.target.startswith("@"))


def pick_winner(rules: Iterable[Rule]) -> Rule:
    """Later origin_ts wins; ties go to the lexically smallest list id."""
    return min(rules, key=lambda r: (-r.origin_ts, r.list_id))


def consolidate(rules: Iterable[Rule]) -> dict[tuple[RuleKind, str], Rule]:
    """Winning ban rule per (kind, target).

    A target only stays enforced while at least one active rule still
    recommends a ban; targets with nothing but unbans are absent.
    """
    grouped: dict[tuple[RuleKind, str], list[Rule]] = {}
    for rule in rules:
        grouped.setdefault((rule.rule_kind, rule.target), []).append(rule)

    out: dict[tuple[RuleKind, str], Rule] = {}
    for key, group in grouped.items():
        bans = [r for r in group if r.recommendation is Recommendation.BAN]
        if bans:
            out[key] = pick_winner(bans)
    return out


def desired_state(
    snapshot: RuleSnapshot,
    list_ids: Iterable[str],
    members: Iterable[str] = (),
) -> dict[EnforcementKey, Rule]:
    member_ids = sorted(set(members))
    candidates: dict[EnforcementKey, list[Rule]] = {}

    for (kind, target), rule in consolidate(snapshot.active_rules(list_ids)).items():
        if is_member_pattern(rule):
            for user_id in member_ids:
                if entity_matches(target, user_id):
                    candidates.setdefault((kind, user_id), []).append(rule)
        else:
            candidates.setdefault((kind, target), []).append(rule)

    return {key: pick_winner(rules) for key, rules in candidates.items()}


def diff_room(
    room_id: str,
    desired: Mapping[EnforcementKey, Rule],
    cached: Mapping[EnforcementKey, Rule],
) -> list[EnforcementAction]:
    """Actions that move `cached` to `desired`; revokes come first."""
    revokes: list[EnforcementAction] = []
    applies: list[EnforcementAction] = []

    for key in sorted(cached, key=_key_order):
        if key not in desired:
            revokes.append(EnforcementAction(room_id=room_id, rule=cached[key], entity=key[1], op="revoke"))

    for key in sorted(desired, key=_key_order):
        rule = desired[key]
        current = cached.get(key)
        if current is None or not same_rule(current, rule):
            applies.append(EnforcementAction(room_id=room_id, rule=rule, entity=key[1], op="apply"))

    return revokes + applies


def same_rule(a: Optional[Rule], b: Optional[Rule]) -> bool:
    if a is None or b is None:
        return a is b
    return a.list_id == b.list_id and a.source_version == b.source_version


def _key_order(key: EnforcementKey) -> tuple[str, str]:
    return (key[0].value, key[1])
