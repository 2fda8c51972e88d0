from __future__ import annotations

from clobber.policy.models import ProtectedRoom
from clobber.policy.registry import ListRegistry, MemberIndex, ProtectedRoomRegistry, resolve_watches

SPAM = "!spam:example.org"
COC = "!coc:example.org"


def test_list_registry_prefers_watched_mapping_over_labels() -> None:
    lists = ListRegistry()
    lists.set_label(COC, "spam")
    assert lists.resolve("spam") == COC

    changed = lists.replace({"spam": SPAM})
    assert changed == {"spam"}
    assert lists.resolve("spam") == SPAM
    assert lists.resolve(COC) == COC
    assert lists.resolve("unknown") is None


def test_list_registry_replace_reports_only_changes() -> None:
    lists = ListRegistry()
    lists.replace({"spam": SPAM, "coc": COC})
    generation = lists.generation

    assert lists.replace({"spam": SPAM, "coc": COC}) == set()
    assert lists.generation == generation
    assert lists.replace({"spam": COC}) == {"spam", "coc"}
    assert lists.watched_list_ids() == {COC}


def test_protected_room_registry_diff() -> None:
    rooms = ProtectedRoomRegistry()
    rooms.replace([ProtectedRoom("!r1:x"), ProtectedRoom("!r2:x", ("spam",))])

    added, removed, changed = rooms.replace([ProtectedRoom("!r2:x", ("coc",)), ProtectedRoom("!r3:x")])

    assert added == {"!r3:x"}
    assert removed == {"!r1:x"}
    assert changed == {"!r2:x"}
    assert "!r1:x" not in rooms
    assert rooms.room_ids() == ["!r2:x", "!r3:x"]


def test_protected_room_registry_dump_round_trip_keeps_watch_all() -> None:
    rooms = ProtectedRoomRegistry()
    rooms.replace([ProtectedRoom("!r1:x"), ProtectedRoom("!r2:x", ("spam", COC))])

    restored = ProtectedRoomRegistry()
    restored.load(rooms.dump())

    assert restored.get("!r1:x").watches is None
    assert restored.get("!r2:x").watches == ("spam", COC)


def test_resolve_watches() -> None:
    lists = ListRegistry()
    lists.replace({"spam": SPAM, "coc": COC})

    assert resolve_watches(ProtectedRoom("!r1:x"), lists) == {SPAM, COC}
    assert resolve_watches(ProtectedRoom("!r1:x", ("spam", "missing")), lists) == {SPAM}
    assert resolve_watches(ProtectedRoom("!r1:x", (COC,)), lists) == {COC}


def test_member_index_tracks_presence() -> None:
    index = MemberIndex()
    assert index.update("!r1:x", "@a:x", "join")
    assert not index.update("!r1:x", "@a:x", "join")
    assert not index.update("!r1:x", "@a:x", "ban")
    assert "@a:x" in index.members("!r1:x")

    index.update("!r1:x", "@a:x", "leave")
    assert index.members("!r1:x") == frozenset()

    index.update("!r1:x", "@b:x", "invite")
    index.drop("!r1:x")
    assert index.members("!r1:x") == frozenset()
