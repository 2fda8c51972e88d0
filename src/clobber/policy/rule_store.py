from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from .models import Rule

log = logging.getLogger("clobber.rule_store")


@dataclass(frozen=True)
class RuleSnapshot:
    """Point-in-time, read-only view of the store.

    Reconciliation passes read from one snapshot for their whole duration,
    so a rule update mid-pass is picked up by the next pass.
    """

    generation: int
    rules: Mapping[str, Mapping[str, Rule]]
    active_lists: frozenset[str]

    def is_active(self, list_id: str) -> bool:
        return list_id in self.active_lists

    def active_rules(self, list_ids: Iterable[str]) -> list[Rule]:
        out: list[Rule] = []
        for list_id in sorted(set(list_ids)):
            if list_id not in self.active_lists:
                continue
            out.extend(self.rules.get(list_id, {}).values())
        return out


class RuleStore:
    """In-memory rules keyed by (list_id, target).

    Rules of lists that are not active are retained but excluded from every
    active view, so re-watching a list restores enforcement without
    re-reading its history.
    """

    def __init__(self) -> None:
        self._rules: dict[str, dict[str, Rule]] = {}
        self._active: set[str] = set()
        self._generation = 0
        self._snapshot: Optional[RuleSnapshot] = None

    @property
    def generation(self) -> int:
        return self._generation

    def _touch(self) -> None:
        self._generation += 1
        self._snapshot = None

    def get(self, list_id: str, target: str) -> Optional[Rule]:
        return self._rules.get(list_id, {}).get(target)

    def find_version(self, list_id: str, source_version: str) -> Optional[Rule]:
        """The current rule in `list_id` that came from event `source_version`."""
        for rule in self._rules.get(list_id, {}).values():
            if rule.source_version == source_version:
                return rule
        return None

    def upsert(self, rule: Rule) -> bool:
        """Store `rule` as the current rule for its target.

        Returns False when nothing changed: the same source version was
        already applied, or the stored rule has a later origin timestamp.
        """
        current = self.get(rule.list_id, rule.target)
        if current is not None:
            if current.source_version == rule.source_version:
                return False
            if rule.origin_ts < current.origin_ts:
                log.debug(
                    "Ignoring stale rule %s for %s in %s (ts %s < %s)",
                    rule.source_version, rule.target, rule.list_id, rule.origin_ts, current.origin_ts,
                )
                return False
        self._rules.setdefault(rule.list_id, {})[rule.target] = rule
        self._touch()
        return True

    def set_active_lists(self, list_ids: Iterable[str]) -> tuple[set[str], set[str]]:
        """Replace the set of active lists. Returns (activated, deactivated)."""
        new = set(list_ids)
        activated = new - self._active
        deactivated = self._active - new
        if activated or deactivated:
            self._active = new
            self._touch()
        return activated, deactivated

    def is_active(self, list_id: str) -> bool:
        return list_id in self._active

    def rules_for_list(self, list_id: str) -> list[Rule]:
        return sorted(self._rules.get(list_id, {}).values(), key=lambda r: r.target)

    def active_rules(self, list_id: str) -> list[Rule]:
        if list_id not in self._active:
            return []
        return self.rules_for_list(list_id)

    def list_ids(self) -> list[str]:
        return sorted(self._rules)

    def snapshot(self) -> RuleSnapshot:
        if self._snapshot is None:
            frozen = {lid: MappingProxyType(dict(rules)) for lid, rules in self._rules.items()}
            self._snapshot = RuleSnapshot(
                generation=self._generation,
                rules=MappingProxyType(frozen),
                active_lists=frozenset(self._active),
            )
        return self._snapshot

    # Persistence

    def dump(self) -> dict[str, Any]:
        return {
            "active_lists": sorted(self._active),
            "rules": [r.to_dict() for lid in sorted(self._rules) for r in self.rules_for_list(lid)],
        }

    def load(self, data: dict[str, Any]) -> None:
        self._rules.clear()
        for raw in data.get("rules") or []:
            rule = Rule.from_dict(raw)
            self._rules.setdefault(rule.list_id, {})[rule.target] = rule
        self._active = set(str(x) for x in data.get("active_lists") or [])
        self._touch()
