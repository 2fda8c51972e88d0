from __future__ import annotations

from typing import Any, Iterable, Optional

from .models import ProtectedRoom


def _is_room_id(ref: str) -> bool:
    return ref.startswith("!")


class ListRegistry:
    """Shortcode <-> list id mapping.

    Two sources feed it: the `watched_lists` account data (authoritative,
    replaced wholesale) and shortcode state events published in the list
    rooms themselves (a reverse label index, used as a fallback when
    resolving a shortcode).
    """

    def __init__(self) -> None:
        self._shortcodes: dict[str, str] = {}
        self._labels: dict[str, str] = {}
        self.generation = 0

    def replace(self, mapping: dict[str, str]) -> set[str]:
        """Replace the watched mapping; returns the shortcodes whose target changed."""
        old = self._shortcodes
        changed = {k for k in set(old) | set(mapping) if old.get(k) != mapping.get(k)}
        self._shortcodes = dict(mapping)
        if changed:
            self.generation += 1
        return changed

    def set_label(self, list_id: str, label: Optional[str]) -> Optional[str]:
        """Record the label a list room announces for itself. Returns the previous one."""
        previous = self._labels.get(list_id)
        if previous == label:
            return previous
        if label:
            self._labels[list_id] = label
        else:
            self._labels.pop(list_id, None)
        self.generation += 1
        return previous

    def resolve(self, ref: str) -> Optional[str]:
        if _is_room_id(ref):
            return ref
        if ref in self._shortcodes:
            return self._shortcodes[ref]
        for list_id, label in self._labels.items():
            if label == ref:
                return list_id
        return None

    def watched_list_ids(self) -> set[str]:
        return set(self._shortcodes.values())

    def dump(self) -> dict[str, Any]:
        return {"shortcodes": dict(self._shortcodes), "labels": dict(self._labels)}

    def load(self, data: dict[str, Any]) -> None:
        self._shortcodes = {str(k): str(v) for k, v in (data.get("shortcodes") or {}).items()}
        self._labels = {str(k): str(v) for k, v in (data.get("labels") or {}).items()}
        self.generation += 1


class ProtectedRoomRegistry:
    def __init__(self) -> None:
        self._rooms: dict[str, ProtectedRoom] = {}
        self.generation = 0

    def replace(self, rooms: Iterable[ProtectedRoom]) -> tuple[set[str], set[str], set[str]]:
        """Replace the room set. Returns (added, removed, changed) room ids."""
        new = {r.room_id: r for r in rooms}
        added = set(new) - set(self._rooms)
        removed = set(self._rooms) - set(new)
        changed = {rid for rid in set(new) & set(self._rooms) if new[rid] != self._rooms[rid]}
        self._rooms = new
        if added or removed or changed:
            self.generation += 1
        return added, removed, changed

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[ProtectedRoom]:
        return self._rooms.get(room_id)

    def room_ids(self) -> list[str]:
        return sorted(self._rooms)

    def rooms(self) -> list[ProtectedRoom]:
        return [self._rooms[rid] for rid in self.room_ids()]

    def dump(self) -> dict[str, Any]:
        return {
            "rooms": {
                r.room_id: ({"lists": list(r.watches)} if r.watches is not None else {})
                for r in self.rooms()
            }
        }

    def load(self, data: dict[str, Any]) -> None:
        rooms: dict[str, ProtectedRoom] = {}
        for room_id, entry in (data.get("rooms") or {}).items():
            lists = (entry or {}).get("lists")
            rooms[str(room_id)] = ProtectedRoom(
                room_id=str(room_id),
                watches=(tuple(str(x) for x in lists) if lists is not None else None),
            )
        self._rooms = rooms
        self.generation += 1


def resolve_watches(room: ProtectedRoom, lists: ListRegistry) -> set[str]:
    """List ids a protected room currently watches."""
    if room.watches is None:
        return lists.watched_list_ids()
    out: set[str] = set()
    for ref in room.watches:
        list_id = lists.resolve(ref)
        if list_id:
            out.add(list_id)
    return out


_PRESENT = frozenset({"join", "invite", "knock", "ban"})


class MemberIndex:
    """Users present in each joined room, as observed from member events.

    Banned users stay in the index so glob rules keep covering them.
    """

    def __init__(self) -> None:
        self._members: dict[str, set[str]] = {}

    def update(self, room_id: str, user_id: str, membership: str) -> bool:
        """Apply a membership change. Returns True when the user newly appeared."""
        members = self._members.setdefault(room_id, set())
        if membership in _PRESENT:
            if user_id in members:
                return False
            members.add(user_id)
            return True
        members.discard(user_id)
        return False

    def members(self, room_id: str) -> frozenset[str]:
        return frozenset(self._members.get(room_id, ()))

    def drop(self, room_id: str) -> None:
        self._members.pop(room_id, None)
