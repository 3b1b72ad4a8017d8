#!/usr/bin/env python3
"""
End-to-end tests for the dashboard WebSocket protocol.
"""

import msgpack
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from aurora_server.server import create_app

TIMEOUT = 5


@pytest_asyncio.fixture
async def client(test_config):
    """Run the full application on an ephemeral port."""
    app = create_app(test_config)
    async with TestClient(TestServer(app)) as client:
        yield client


async def connect(client):
    ws = await client.ws_connect("/ws")
    welcome = await ws.receive_json(timeout=TIMEOUT)
    return ws, welcome


async def receive_until(ws, msg_type):
    """Skip unrelated broadcasts until a message of the given type arrives."""
    while True:
        message = await ws.receive_json(timeout=TIMEOUT)
        if message["type"] == msg_type:
            return message


class TestWebSocketProtocol:
    """Test the request/subscribe protocol over a real socket."""

    @pytest.mark.asyncio
    async def test_welcome_is_first_message(self, client):
        gateway = client.app["gateway"]
        await gateway.run_start({"runId": "run-welcome", "browser": {"name": "chrome"}})

        ws, welcome = await connect(client)

        assert welcome["type"] == "welcome"
        assert welcome["payload"]["recentRuns"][0]["id"] == "run-welcome"
        assert welcome["payload"]["statistics"]["runs"]["totalRuns"] == 1
        assert welcome["timestamp"].endswith("Z")
        await ws.close()

    @pytest.mark.asyncio
    async def test_ping_pong(self, client):
        ws, _ = await connect(client)

        await ws.send_json({"type": "ping"})
        reply = await ws.receive_json(timeout=TIMEOUT)

        assert reply["type"] == "pong"
        await ws.close()

    @pytest.mark.asyncio
    async def test_binary_frames_get_binary_replies(self, client):
        ws, _ = await connect(client)

        await ws.send_bytes(msgpack.packb({"type": "ping"}))
        raw = await ws.receive_bytes(timeout=TIMEOUT)

        assert msgpack.unpackb(raw, raw=False)["type"] == "pong"
        await ws.close()

    @pytest.mark.asyncio
    async def test_invalid_and_unknown_messages_produce_errors(self, client):
        ws, _ = await connect(client)

        await ws.send_str("{not json")
        invalid = await ws.receive_json(timeout=TIMEOUT)
        await ws.send_json({"type": "launch:rockets"})
        unknown = await ws.receive_json(timeout=TIMEOUT)
        await ws.send_json({"type": "subscribe:test-run", "payload": {"runId": "missing"}})
        missing = await ws.receive_json(timeout=TIMEOUT)

        assert invalid["type"] == "error"
        assert unknown["type"] == "error"
        assert unknown["payload"]["requestType"] == "launch:rockets"
        assert missing["type"] == "error"
        assert missing["payload"]["requestType"] == "subscribe:test-run"
        assert "missing" in missing["payload"]["message"]

        # The connection stays usable after errors.
        await ws.send_json({"type": "ping"})
        assert (await ws.receive_json(timeout=TIMEOUT))["type"] == "pong"
        await ws.close()

    @pytest.mark.asyncio
    async def test_subscribe_test_run_receives_details_then_live_results(self, client):
        gateway = client.app["gateway"]
        ctx = await gateway.run_start({"runId": "run-live", "specs": ["login.cy.ts"]})
        ws, _ = await connect(client)

        await ws.send_json({"type": "subscribe:test-run", "payload": {"runId": "run-live"}})
        details = await receive_until(ws, "test-run:details")
        assert details["payload"]["run"]["id"] == "run-live"
        assert details["payload"]["results"] == []

        await gateway.spec_after(ctx, "login.cy.ts", {"tests": [
            {"title": ["login", "works"], "state": "passed", "duration": 120},
        ]})
        completed = await receive_until(ws, "test:completed")

        assert completed["payload"]["fullTitle"] == "login works"
        assert completed["payload"]["runId"] == "run-live"
        await ws.close()

    @pytest.mark.asyncio
    async def test_subscribe_test_runs_receives_initial_list_and_updates(self, client):
        gateway = client.app["gateway"]
        ws, _ = await connect(client)

        await ws.send_json({"type": "subscribe:test-runs"})
        initial = await receive_until(ws, "test-runs:initial")
        assert initial["payload"] == []

        await gateway.run_start({"runId": "run-new"})
        update = await receive_until(ws, "test-runs:update")

        assert update["payload"]["action"] == "started"
        assert update["payload"]["run"]["id"] == "run-new"
        await ws.close()

    @pytest.mark.asyncio
    async def test_get_requests(self, client):
        gateway = client.app["gateway"]
        ctx = await gateway.run_start({"runId": "run-get"})
        created = await gateway.spec_after(ctx, "a.cy.ts", [{"title": "works", "state": "passed"}])
        ws, _ = await connect(client)

        await ws.send_json({"type": "get:test-result", "payload": {"testId": created[0].id}})
        details = await receive_until(ws, "test-result:details")
        await ws.send_json({"type": "get:statistics"})
        stats = await receive_until(ws, "statistics:update")
        await ws.send_json({"type": "get:flaky-tests", "payload": {"threshold": 0.2}})
        flaky = await receive_until(ws, "flaky-tests:update")

        assert details["payload"]["testResult"]["id"] == created[0].id
        assert details["payload"]["screenshots"] == []
        assert stats["payload"]["results"]["total"] == 1
        assert flaky["payload"] == []
        await ws.close()

    @pytest.mark.asyncio
    async def test_websocket_info_counts_connected_clients(self, client):
        ws, _ = await connect(client)
        await ws.send_json({"type": "subscribe:test-updates"})
        await ws.send_json({"type": "ping"})
        await receive_until(ws, "pong")

        resp = await client.get("/api/websocket/info")
        body = await resp.json()

        assert resp.status == 200
        assert body["data"]["connectedClients"] == 1
        assert body["data"]["rooms"] == {"test-updates": 1}
        await ws.close()
