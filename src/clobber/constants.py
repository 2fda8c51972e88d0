from __future__ import annotations

# Policy rule state events. The stable `m.policy.rule.*` names plus the legacy
# aliases still published by older list rooms.
RULE_USER_TYPES = ("m.policy.rule.user", "m.room.rule.user", "org.matrix.mjolnir.rule.user")
RULE_ROOM_TYPES = ("m.policy.rule.room", "m.room.rule.room", "org.matrix.mjolnir.rule.room")
RULE_SERVER_TYPES = ("m.policy.rule.server", "m.room.rule.server", "org.matrix.mjolnir.rule.server")

RULE_TYPE_PREFIXES = ("m.policy.rule.", "m.room.rule.", "org.matrix.mjolnir.rule.")

SHORTCODE_EVENT_TYPE = "org.matrix.mjolnir.shortcode"

MEMBER_EVENT_TYPE = "m.room.member"
POWER_LEVELS_EVENT_TYPE = "m.room.power_levels"
SERVER_ACL_EVENT_TYPE = "m.room.server_acl"
REDACTION_EVENT_TYPE = "m.room.redaction"

# Account data
PROTECTED_ROOMS_TYPE = "org.matrix.clobber.protected_rooms"
WATCHED_LISTS_TYPE = "org.matrix.clobber.watched_lists"

BAN_RECOMMENDATIONS = frozenset({"m.ban", "org.matrix.mjolnir.ban", "ban"})
UNBAN_RECOMMENDATIONS = frozenset({"m.unban", "org.matrix.mjolnir.unban", "unban"})

GLOB_CHARS = ("*", "?")

# Persisted state sections
STATE_SECTION_RULES = "rules"
STATE_SECTION_LISTS = "lists"
STATE_SECTION_PROTECTED = "protected_rooms"
STATE_ROOM_PREFIX = "room:"
STATE_FORMAT_VERSION = 1
