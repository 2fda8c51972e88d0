from __future__ import annotations

import logging
from typing import Any, Optional

from ..constants import (
    MEMBER_EVENT_TYPE,
    POWER_LEVELS_EVENT_TYPE,
    PROTECTED_ROOMS_TYPE,
    SHORTCODE_EVENT_TYPE,
    WATCHED_LISTS_TYPE,
)
from ..services.stats import RuntimeStats
from .errors import MalformedAccountData, MalformedRule
from .models import AccountDataUpdate, ProtectedRoom, Recommendation, Redaction, Rule, StateUpdate
from .reconciler import Reconciler
from .registry import ListRegistry, MemberIndex, ProtectedRoomRegistry, resolve_watches
from .rule_engine import entity_matches, is_member_pattern, is_rule_event, parse_rule
from .rule_store import RuleStore

log = logging.getLogger("clobber.ingestor")


def _is_room_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("!") and ":" in value


def _content(update: StateUpdate) -> dict[str, Any]:
    return update.content if isinstance(update.content, dict) else {}


class EventIngestor:
    """Validates incoming state and account data and applies it.

    This is the only writer of the rule store and the registries. It runs
    on the delivery path, so it never awaits: it mutates memory and
    schedules reconciliation for whatever the change touched.
    """

    def __init__(
        self,
        *,
        rules: RuleStore,
        lists: ListRegistry,
        rooms: ProtectedRoomRegistry,
        members: MemberIndex,
        reconciler: Reconciler,
        bot_user_id: Optional[str] = None,
        protected_rooms_type: str = PROTECTED_ROOMS_TYPE,
        watched_lists_type: str = WATCHED_LISTS_TYPE,
        stats: Optional[RuntimeStats] = None,
    ) -> None:
        self.rules = rules
        self.lists = lists
        self.rooms = rooms
        self.members = members
        self.reconciler = reconciler
        self.bot_user_id = bot_user_id
        self.protected_rooms_type = protected_rooms_type
        self.watched_lists_type = watched_lists_type
        self.stats = stats or RuntimeStats()

    # Room state

    def ingest_state(self, update: StateUpdate) -> bool:
        event_type = update.event_type
        try:
            if event_type == SHORTCODE_EVENT_TYPE:
                changed = self._ingest_shortcode(update)
            elif is_rule_event(event_type):
                changed = self._ingest_rule(update)
            elif event_type == MEMBER_EVENT_TYPE:
                changed = self._ingest_member(update)
            elif event_type == POWER_LEVELS_EVENT_TYPE:
                changed = self._ingest_power_levels(update)
            else:
                return False
        except MalformedRule as e:
            self.stats.events_dropped += 1
            log.warning(
                "Dropping malformed rule %s in %s (state_key=%r): %s",
                update.version_token or "?", update.room_id, update.state_key, e,
            )
            return False

        if changed:
            self.stats.events_ingested += 1
        return changed

    def _ingest_rule(self, update: StateUpdate) -> bool:
        rule = parse_rule(update)
        if not self.rules.upsert(rule):
            return False
        log.debug(
            "Rule %s %s %s from %s (%s)",
            rule.rule_kind.value, rule.recommendation.value, rule.target, rule.list_id, rule.source_version,
        )
        self.reconciler.request_list(rule.list_id)
        return True

    def _ingest_shortcode(self, update: StateUpdate) -> bool:
        label = _content(update).get("shortcode")
        if label is not None and (not isinstance(label, str) or not label.strip()):
            self.stats.events_dropped += 1
            log.warning("Ignoring invalid shortcode %r announced by %s", label, update.room_id)
            return False
        label = label.strip() if label else None

        previous = self.lists.set_label(update.room_id, label)
        if previous == label:
            return False
        log.info("List %s announces shortcode %r (was %r)", update.room_id, label, previous)
        affected = {x for x in (previous, label) if x}
        for room in self.rooms.rooms():
            if room.watches and affected & set(room.watches):
                self.reconciler.request_room(room.room_id)
        return True

    def _ingest_member(self, update: StateUpdate) -> bool:
        # Membership is tracked for every joined room so a room that becomes
        # protected later is reconciled against its existing members.
        if not update.state_key:
            return False
        room_id = update.room_id
        user_id = update.state_key
        membership = str(_content(update).get("membership") or "leave")
        room = self.rooms.get(room_id)

        if self.bot_user_id and user_id == self.bot_user_id:
            if membership in ("leave", "ban"):
                self.members.drop(room_id)
            if room is None:
                return False
            self.reconciler.reevaluate(room_id)
            return True

        if not self.members.update(room_id, user_id, membership):
            return False
        if room is not None and self._glob_ban_matches(room, user_id):
            self.reconciler.request_room(room_id)
        return True

    def _ingest_power_levels(self, update: StateUpdate) -> bool:
        if update.room_id not in self.rooms:
            return False
        return self.reconciler.reevaluate(update.room_id)

    def _glob_ban_matches(self, room: ProtectedRoom, user_id: str) -> bool:
        snapshot = self.rules.snapshot()
        for rule in snapshot.active_rules(resolve_watches(room, self.lists)):
            if (
                rule.recommendation is Recommendation.BAN
                and is_member_pattern(rule)
                and entity_matches(rule.target, user_id)
            ):
                return True
        return False

    def ingest_redaction(self, redaction: Redaction) -> bool:
        """Lift the rule a redaction removed.

        The redacted state event keeps its event id, so re-delivery alone
        would be a no-op; the redaction stands in as a newer unban.
        """
        rule = self.rules.find_version(redaction.room_id, redaction.redacts)
        if rule is None or not redaction.version_token:
            return False
        lifted = Rule(
            list_id=rule.list_id,
            rule_kind=rule.rule_kind,
            target=rule.target,
            recommendation=Recommendation.UNBAN,
            origin_ts=max(rule.origin_ts, redaction.origin_ts),
            source_version=redaction.version_token,
        )
        if not self.rules.upsert(lifted):
            return False
        log.info("Rule %s for %s in %s was redacted", redaction.redacts, rule.target, rule.list_id)
        self.stats.events_ingested += 1
        self.reconciler.request_list(rule.list_id)
        return True

    # Account data

    def ingest_account_data(self, update: AccountDataUpdate) -> bool:
        try:
            if update.type == self.protected_rooms_type:
                changed = self._ingest_protected_rooms(update.content)
            elif update.type == self.watched_lists_type:
                changed = self._ingest_watched_lists(update.content)
            else:
                return False
        except MalformedAccountData as e:
            self.stats.events_dropped += 1
            log.warning("Dropping malformed %s account data: %s", update.type, e)
            return False

        if changed:
            self.stats.events_ingested += 1
        return changed

    def _parse_protected_rooms(self, content: dict[str, Any]) -> list[ProtectedRoom]:
        raw = (content or {}).get("rooms")
        rooms: list[ProtectedRoom] = []

        if isinstance(raw, list):
            for room_id in raw:
                if not _is_room_id(room_id):
                    raise MalformedAccountData(f"invalid room id {room_id!r}", data_type=self.protected_rooms_type)
                rooms.append(ProtectedRoom(room_id=room_id))
            return rooms

        if isinstance(raw, dict):
            for room_id, entry in raw.items():
                if not _is_room_id(room_id):
                    raise MalformedAccountData(f"invalid room id {room_id!r}", data_type=self.protected_rooms_type)
                if entry is None:
                    entry = {}
                if not isinstance(entry, dict):
                    raise MalformedAccountData(f"room entry for {room_id} must be an object", data_type=self.protected_rooms_type)
                watches = entry.get("lists")
                if watches is not None:
                    if not isinstance(watches, list) or not all(isinstance(x, str) and x for x in watches):
                        raise MalformedAccountData(
                            f"'lists' for {room_id} must be a list of shortcodes or list room ids",
                            data_type=self.protected_rooms_type,
                        )
                    watches = tuple(watches)
                rooms.append(ProtectedRoom(room_id=room_id, watches=watches))
            return rooms

        raise MalformedAccountData("'rooms' must be a list or an object", data_type=self.protected_rooms_type)

    def _ingest_protected_rooms(self, content: dict[str, Any]) -> bool:
        rooms = self._parse_protected_rooms(content)
        added, removed, changed = self.rooms.replace(rooms)

        for room_id in sorted(removed):
            self.reconciler.drop_room(room_id)
        for room_id in sorted(added | changed):
            self.reconciler.request_room(room_id)

        if added or removed or changed:
            log.info(
                "Protected rooms updated: %d room(s), +%d -%d ~%d",
                len(rooms), len(added), len(removed), len(changed),
            )
            return True
        return False

    def _ingest_watched_lists(self, content: dict[str, Any]) -> bool:
        raw = (content or {}).get("lists")
        if not isinstance(raw, dict):
            raise MalformedAccountData("'lists' must be an object of shortcode -> list room id", data_type=self.watched_lists_type)
        mapping: dict[str, str] = {}
        for shortcode, list_id in raw.items():
            if not isinstance(shortcode, str) or not shortcode.strip():
                raise MalformedAccountData(f"invalid shortcode {shortcode!r}", data_type=self.watched_lists_type)
            if not _is_room_id(list_id):
                raise MalformedAccountData(f"invalid list room id {list_id!r} for {shortcode}", data_type=self.watched_lists_type)
            mapping[shortcode.strip()] = list_id

        changed_codes = self.lists.replace(mapping)
        activated, deactivated = self.rules.set_active_lists(self.lists.watched_list_ids())

        for list_id in sorted(activated | deactivated):
            self.reconciler.request_list(list_id)
        if changed_codes:
            for room in self.rooms.rooms():
                if room.watches and changed_codes & set(room.watches):
                    self.reconciler.request_room(room.room_id)

        if changed_codes or activated or deactivated:
            log.info(
                "Watched lists updated: %d list(s), activated=%s deactivated=%s",
                len(mapping), sorted(activated), sorted(deactivated),
            )
            return True
        return False
