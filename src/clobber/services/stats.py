from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RuntimeStats:
    started_at: float = field(default_factory=time.time)
    events_ingested: int = 0
    events_dropped: int = 0
    passes_run: int = 0
    actions_applied: int = 0
    actions_revoked: int = 0
    actions_failed: int = 0
    actions_discarded: int = 0
    snapshots_flushed: int = 0

    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)

    def as_dict(self) -> dict[str, int]:
        return {
            "uptime_seconds": self.uptime_seconds(),
            "events_ingested": self.events_ingested,
            "events_dropped": self.events_dropped,
            "passes_run": self.passes_run,
            "actions_applied": self.actions_applied,
            "actions_revoked": self.actions_revoked,
            "actions_failed": self.actions_failed,
            "actions_discarded": self.actions_discarded,
            "snapshots_flushed": self.snapshots_flushed,
        }
