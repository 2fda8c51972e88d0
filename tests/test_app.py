from __future__ import annotations

import asyncio

from aiohttp import test_utils

from clobber.app import build_web_app

from helpers import FakeMatrixClient, make_engine, protected_rooms, rule_event, watched_lists

SPAM = "!spam:example.org"
R1 = "!r1:example.org"


def test_health_and_query_endpoints(client: FakeMatrixClient) -> None:
    async def scenario():
        engine = make_engine(client)
        engine.ingest_account_data(watched_lists({"spam": SPAM}))
        engine.ingest_account_data(protected_rooms([R1]))
        engine.ingest_state(rule_event(SPAM, "@evil:domain.tld"))
        await engine.reconciler.run_pass(R1)

        async with test_utils.TestClient(test_utils.TestServer(build_web_app(engine))) as http:
            health = await (await http.get("/healthz")).json()
            status = await (await http.get(f"/rooms/{R1}/status")).json()
            unknown = await (await http.get("/rooms/!nope:example.org/status")).json()
            rules = await (await http.get("/lists/spam/rules")).json()
        return health, status, unknown, rules

    health, status, unknown, rules = asyncio.run(scenario())

    assert health["ok"] and health["stats"]["actions_applied"] == 1
    assert status == {"room_id": R1, "state": "idle", "backoff_until": None, "reason": None, "protected": True}
    assert unknown["protected"] is False
    assert [r["target"] for r in rules["rules"]] == ["@evil:domain.tld"]
