from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from ..constants import STATE_FORMAT_VERSION
from ..policy.errors import SnapshotCorruptError
from .base import BaseService

META_KEY = "meta"


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def checksum(payload_json: str) -> str:
    return hashlib.sha256(payload_json.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class StateRow:
    key: str
    payload_json: str
    checksum: str
    updated_at_iso: str


class EngineStateStore(BaseService):
    """Key/value persistence for the engine's in-memory state.

    Every section is stored as canonical JSON next to its SHA-256. A row
    that fails verification makes `load_all` raise SnapshotCorruptError so
    the engine refuses to enforce from unverified state.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS engine_state (
              key TEXT PRIMARY KEY,
              payload_json TEXT NOT NULL,
              checksum TEXT NOT NULL,
              updated_at_iso TEXT NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> StateRow:
        return StateRow(
            key=str(row["key"]),
            payload_json=str(row["payload_json"]),
            checksum=str(row["checksum"]),
            updated_at_iso=str(row["updated_at_iso"]),
        )

    async def save(self, sections: dict[str, Any], *, prune_prefix: Optional[str] = None) -> None:
        """Write `sections` in one transaction.

        With `prune_prefix`, rows under that prefix that are not in
        `sections` are deleted.
        """
        now_iso = datetime.now(timezone.utc).isoformat(timespec="seconds")
        rows = []
        for key, payload in {META_KEY: {"format_version": STATE_FORMAT_VERSION}, **sections}.items():
            payload_json = canonical_json(payload)
            rows.append((key, payload_json, checksum(payload_json), now_iso))

        async with aiosqlite.connect(self._path) as db:
            await db.executemany(
                """
                INSERT INTO engine_state (key, payload_json, checksum, updated_at_iso)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  payload_json = excluded.payload_json,
                  checksum = excluded.checksum,
                  updated_at_iso = excluded.updated_at_iso
                """,
                rows,
            )
            if prune_prefix:
                async with db.execute(
                    "SELECT key FROM engine_state WHERE substr(key, 1, ?) = ?",
                    (len(prune_prefix), prune_prefix),
                ) as cur:
                    stale = [row[0] for row in await cur.fetchall() if row[0] not in sections]
                for key in stale:
                    await db.execute("DELETE FROM engine_state WHERE key = ?", (key,))
            await db.commit()
        self._logger.debug("Saved %d state section(s)", len(rows))

    async def load_all(self) -> dict[str, Any]:
        """Return every verified section, or {} for a fresh database."""
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT key, payload_json, checksum, updated_at_iso FROM engine_state ORDER BY key"
            ) as cur:
                rows = [self._from_row(r) for r in await cur.fetchall()]

        if not rows:
            return {}

        out: dict[str, Any] = {}
        for row in rows:
            if checksum(row.payload_json) != row.checksum:
                self._logger.error("State section %s failed checksum verification", row.key)
                raise SnapshotCorruptError(f"checksum mismatch for state section {row.key!r}")
            try:
                out[row.key] = json.loads(row.payload_json)
            except json.JSONDecodeError as e:
                raise SnapshotCorruptError(f"state section {row.key!r} is not valid JSON") from e

        meta = out.pop(META_KEY, None)
        if not isinstance(meta, dict) or meta.get("format_version") != STATE_FORMAT_VERSION:
            raise SnapshotCorruptError(f"unsupported state format: {meta!r}")
        return out
