from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from ..policy.errors import ForbiddenError, NetworkError, RateLimitedError
from ..constants import REDACTION_EVENT_TYPE
from ..policy.models import AccountDataUpdate, Redaction, StateUpdate
from ..services.backoff import RetryPolicy
from .client import HttpMatrixClient

if TYPE_CHECKING:
    from ..engine import PolicyEngine

log = logging.getLogger("clobber.sync")


class SyncLoop:
    """Long-polls /sync and feeds state and account data into the engine.

    Delivery is at-least-once: a batch that fails half way is replayed on
    the next poll, which the ingest path tolerates.
    """

    def __init__(
        self,
        client: HttpMatrixClient,
        engine: "PolicyEngine",
        *,
        timeout_ms: int = 30_000,
        retry: RetryPolicy = RetryPolicy(),
    ) -> None:
        self.client = client
        self.engine = engine
        self.timeout_ms = timeout_ms
        self.retry = retry
        self.next_batch: Optional[str] = None

    async def run(self, stop: asyncio.Event) -> None:
        failures = 0
        while not stop.is_set():
            try:
                response = await self.client.sync(self.next_batch, self.timeout_ms)
            except ForbiddenError:
                log.error("Homeserver rejected the access token; stopping sync")
                raise
            except (RateLimitedError, NetworkError) as e:
                failures += 1
                delay = self.retry.delay_for(failures, getattr(e, "retry_after", None))
                log.warning("Sync failed (%s); retrying in %.1fs", e, delay)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                continue

            failures = 0
            self.dispatch(response)
            self.next_batch = response.get("next_batch") or self.next_batch

    def dispatch(self, response: dict[str, Any]) -> int:
        """Hand one sync response to the engine. Returns the number of updates accepted."""
        accepted = 0
        for event in (response.get("account_data") or {}).get("events") or []:
            if not isinstance(event, dict) or not isinstance(event.get("type"), str):
                continue
            content = event.get("content")
            update = AccountDataUpdate(type=event["type"], content=content if isinstance(content, dict) else {})
            if self.engine.ingest_account_data(update):
                accepted += 1

        joined = (response.get("rooms") or {}).get("join") or {}
        for room_id, room in joined.items():
            events = list(((room or {}).get("state") or {}).get("events") or [])
            events += ((room or {}).get("timeline") or {}).get("events") or []
            for event in events:
                if not isinstance(event, dict):
                    continue
                if event.get("type") == REDACTION_EVENT_TYPE:
                    redaction = Redaction.from_event(room_id, event)
                    if redaction is not None and self.engine.ingest_redaction(redaction):
                        accepted += 1
                    continue
                if "state_key" not in event:
                    continue
                if self.engine.ingest_state(StateUpdate.from_event(room_id, event)):
                    accepted += 1
        return accepted
