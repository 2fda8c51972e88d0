from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from ..constants import GLOB_CHARS


class RuleKind(str, Enum):
    BAN_ENTITY = "ban-entity"
    BAN_ROOM = "ban-room"
    SERVER_ACL_DENY = "server-acl-deny"


class Recommendation(str, Enum):
    BAN = "ban"
    UNBAN = "unban"


@dataclass(frozen=True)
class Rule:
    """One policy directive from a list.

    `list_id` is the list room id, so it survives shortcode renames.
    `source_version` is the event id that set the current value.
    """

    list_id: str
    rule_kind: RuleKind
    target: str
    recommendation: Recommendation
    origin_ts: int
    source_version: str
    reason: Optional[str] = None

    @property
    def is_glob(self) -> bool:
        return any(c in self.target for c in GLOB_CHARS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "list_id": self.list_id,
            "rule_kind": self.rule_kind.value,
            "target": self.target,
            "recommendation": self.recommendation.value,
            "origin_ts": self.origin_ts,
            "source_version": self.source_version,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        reason = data.get("reason")
        return cls(
            list_id=str(data["list_id"]),
            rule_kind=RuleKind(data["rule_kind"]),
            target=str(data["target"]),
            recommendation=Recommendation(data["recommendation"]),
            origin_ts=int(data["origin_ts"]),
            source_version=str(data["source_version"]),
            reason=(str(reason) if reason is not None else None),
        )


def _content_of(event: dict[str, Any]) -> Any:
    content = event.get("content", {})
    return dict(content) if isinstance(content, dict) else content


@dataclass(frozen=True)
class StateUpdate:
    """Normalized room state event handed over by the transport."""

    event_type: str
    room_id: str
    state_key: str
    # Whatever the event carried; only rule parsing insists on an object
    content: Any
    origin_ts: int
    version_token: str
    sender: Optional[str] = None

    @classmethod
    def from_event(cls, room_id: str, event: dict[str, Any]) -> "StateUpdate":
        return cls(
            event_type=str(event.get("type") or ""),
            room_id=str(event.get("room_id") or room_id),
            state_key=str(event.get("state_key") or ""),
            content=_content_of(event),
            origin_ts=int(event.get("origin_server_ts") or 0),
            version_token=str(event.get("event_id") or ""),
            sender=event.get("sender"),
        )


@dataclass(frozen=True)
class Redaction:
    """An m.room.redaction seen in a room timeline."""

    room_id: str
    redacts: str
    origin_ts: int
    version_token: str

    @classmethod
    def from_event(cls, room_id: str, event: dict[str, Any]) -> Optional["Redaction"]:
        # Newer room versions move `redacts` into the content
        redacts = event.get("redacts")
        content = event.get("content")
        if not redacts and isinstance(content, dict):
            redacts = content.get("redacts")
        if not isinstance(redacts, str) or not redacts:
            return None
        return cls(
            room_id=str(event.get("room_id") or room_id),
            redacts=redacts,
            origin_ts=int(event.get("origin_server_ts") or 0),
            version_token=str(event.get("event_id") or ""),
        )


@dataclass(frozen=True)
class AccountDataUpdate:
    type: str
    content: dict[str, Any]


@dataclass(frozen=True)
class ProtectedRoom:
    room_id: str
    # None watches every watched list; otherwise shortcodes or list room ids.
    watches: Optional[tuple[str, ...]] = None


# (rule_kind, entity) as enforced in a room
EnforcementKey = tuple[RuleKind, str]

ActionOp = Literal["apply", "revoke"]


@dataclass(frozen=True)
class EnforcementAction:
    room_id: str
    rule: Rule
    entity: str
    op: ActionOp

    @property
    def key(self) -> EnforcementKey:
        return (self.rule.rule_kind, self.entity)


@dataclass(frozen=True)
class Ack:
    room_id: str
    entity: str
    op: ActionOp
    noop: bool = False


RoomState = Literal["idle", "diffing", "applying", "backoff", "persistent_warning"]


@dataclass(frozen=True)
class RoomStatus:
    room_id: str
    state: RoomState = "idle"
    backoff_until: Optional[float] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class PassResult:
    room_id: str
    ok: bool
    attempted: int = 0
    applied: int = 0
    revoked: int = 0
    skipped: int = 0
    deferred: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
