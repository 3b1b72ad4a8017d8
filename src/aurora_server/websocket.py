"""
WebSocket transport for the Aurora real-time hub.

Binds aiohttp websocket connections to RealtimeHub sessions and serves the
dashboard's request/subscribe protocol on /ws. Test-runner reporters push
lifecycle events to the ingestion gateway over /ws/runner.
"""

import json
import logging

import msgpack
from aiohttp import web

from .analytics import DEFAULT_FLAKY_THRESHOLD, find_flaky_tests, get_overview_statistics
from .errors import AuroraError, ChannelError, ValidationError
from .hub import ROOM_ALL_RUNS, ROOM_TEST_UPDATES, Session, run_room
from .utils import now_utc_iso

logger = logging.getLogger(__name__)

INITIAL_RUNS = 10


class WebSocketSession(Session):
    """A hub session backed by an aiohttp WebSocketResponse."""

    def __init__(self, ws, request):
        super().__init__(info={
            "remote": request.remote,
            "userAgent": request.headers.get("User-Agent"),
        })
        self.ws = ws
        # Sessions that send msgpack frames get msgpack replies.
        self.binary = False

    async def send(self, message):
        if self.ws.closed:
            raise ChannelError(f"WebSocket for session {self.session_id} is closed")
        try:
            if self.binary:
                await self.ws.send_bytes(msgpack.packb(message, use_bin_type=True))
            else:
                await self.ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            raise ChannelError(f"Send to session {self.session_id} failed: {e}") from e

    async def close(self):
        if not self.ws.closed:
            await self.ws.close()


class RealtimeEndpoint:
    """Serves /ws for dashboard sessions."""

    def __init__(self, hub, database, heartbeat: float = 30):
        self.hub = hub
        self.database = database
        self.heartbeat = heartbeat
        self._handlers = {
            "subscribe:test-runs": self._subscribe_test_runs,
            "unsubscribe:test-runs": self._unsubscribe_test_runs,
            "subscribe:test-run": self._subscribe_test_run,
            "unsubscribe:test-run": self._unsubscribe_test_run,
            "subscribe:test-updates": self._subscribe_test_updates,
            "unsubscribe:test-updates": self._unsubscribe_test_updates,
            "get:statistics": self._get_statistics,
            "get:test-result": self._get_test_result,
            "get:flaky-tests": self._get_flaky_tests,
            "ping": self._ping,
        }

    async def handle_ws(self, request):
        """Accept a dashboard websocket and run its receive loop."""
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)

        session = WebSocketSession(ws, request)
        welcome = await self.hub.welcome_snapshot()
        # Register and queue the welcome together so it precedes any broadcast.
        self.hub.register(session)
        self.hub.send_to(session.session_id, "welcome", welcome)

        try:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError as e:
                        self._error(session, f"Invalid JSON: {e}")
                        continue
                elif msg.type == web.WSMsgType.BINARY:
                    session.binary = True
                    try:
                        data = msgpack.unpackb(msg.data, raw=False)
                    except (ValueError, TypeError) as e:
                        self._error(session, f"Invalid msgpack frame: {e}")
                        continue
                elif msg.type == web.WSMsgType.ERROR:
                    logger.error(f"Dashboard ws connection closed with exception {ws.exception()}")
                    break
                else:
                    continue
                await self.dispatch(session, data)
        finally:
            await self.hub.unregister(session.session_id)

        return ws

    async def dispatch(self, session, data):
        """Route one client message; failures become `error` events."""
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            self._error(session, "Message must be an object with a string 'type'")
            return

        msg_type = data["type"]
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {k: v for k, v in data.items() if k != "type"}

        handler = self._handlers.get(msg_type)
        if handler is None:
            self._error(session, f"Unknown message type: {msg_type}", msg_type)
            return
        try:
            await handler(session, payload)
        except AuroraError as e:
            logger.info(f"Request {msg_type} from session {session.session_id} failed: {e.message}")
            self._error(session, e.message, msg_type)

    def _error(self, session, message, request_type=None):
        self.hub.send_to(session.session_id, "error", {"message": message, "requestType": request_type})

    def _require(self, payload, key):
        value = payload.get(key)
        if not isinstance(value, str) or not value:
            raise ValidationError(f"'{key}' is required")
        return value

    # --- Protocol handlers ---

    async def _subscribe_test_runs(self, session, payload):
        self.hub.join(session.session_id, ROOM_ALL_RUNS)
        runs = await self.database.runs.find_recent(INITIAL_RUNS)
        self.hub.send_to(session.session_id, "test-runs:initial", [run.to_dict() for run in runs])

    async def _unsubscribe_test_runs(self, session, payload):
        self.hub.leave(session.session_id, ROOM_ALL_RUNS)

    async def _subscribe_test_run(self, session, payload):
        run_id = self._require(payload, "runId")
        run = await self.database.runs.get(run_id)
        self.hub.join(session.session_id, run_room(run_id))
        results = await self.database.results.find_by_run_id(run_id)
        self.hub.send_to(session.session_id, "test-run:details", {
            "run": run.to_dict(),
            "results": [result.to_dict() for result in results],
        })

    async def _unsubscribe_test_run(self, session, payload):
        self.hub.leave(session.session_id, run_room(self._require(payload, "runId")))

    async def _subscribe_test_updates(self, session, payload):
        self.hub.join(session.session_id, ROOM_TEST_UPDATES)

    async def _unsubscribe_test_updates(self, session, payload):
        self.hub.leave(session.session_id, ROOM_TEST_UPDATES)

    async def _get_statistics(self, session, payload):
        statistics = await get_overview_statistics(self.database)
        self.hub.send_to(session.session_id, "statistics:update", statistics)

    async def _get_test_result(self, session, payload):
        result = await self.database.results.get(self._require(payload, "testId"))
        screenshots = await self.database.screenshots.find_by_result(result.id)
        self.hub.send_to(session.session_id, "test-result:details", {
            "testResult": result.to_dict(),
            "screenshots": [shot.to_dict() for shot in screenshots],
        })

    async def _get_flaky_tests(self, session, payload):
        threshold = payload.get("threshold", DEFAULT_FLAKY_THRESHOLD)
        if isinstance(threshold, str):
            try:
                threshold = float(threshold)
            except ValueError:
                raise ValidationError("threshold must be a number")
        flaky = await find_flaky_tests(self.database, threshold=threshold)
        self.hub.send_to(session.session_id, "flaky-tests:update", [test.to_dict() for test in flaky])

    async def _ping(self, session, payload):
        self.hub.send_to(session.session_id, "pong", {"timestamp": now_utc_iso()})


class RunnerEndpoint:
    """Serves /ws/runner, the producer channel of test-runner reporters.

    Every message is a lifecycle event for the IngestionGateway. Events are
    handled one at a time in arrival order and each is answered with an
    `ack` carrying the gateway's result, or an `error`. Run contexts live
    per connection; a runId this connection has not started is resumed from
    the store.
    """

    def __init__(self, gateway, heartbeat: float = 30):
        self.gateway = gateway
        self.heartbeat = heartbeat
        self._handlers = {
            "run:start": self._run_start,
            "spec:before": self._spec_before,
            "spec:after": self._spec_after,
            "run:end": self._run_end,
            "test:start": self._test_start,
            "test:retry": self._test_retry,
            "test:end": self._test_end,
            "screenshot:captured": self._screenshot_captured,
        }

    async def handle_ws(self, request):
        """Accept a runner websocket and apply its events in order."""
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)

        contexts = {}
        binary = False
        logger.info(f"Runner connected from {request.remote}")
        try:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError as e:
                        await self._reply(ws, binary, "error", {"message": f"Invalid JSON: {e}"})
                        continue
                elif msg.type == web.WSMsgType.BINARY:
                    binary = True
                    try:
                        data = msgpack.unpackb(msg.data, raw=False)
                    except (ValueError, TypeError) as e:
                        await self._reply(ws, binary, "error", {"message": f"Invalid msgpack frame: {e}"})
                        continue
                elif msg.type == web.WSMsgType.ERROR:
                    logger.error(f"Runner ws connection closed with exception {ws.exception()}")
                    break
                else:
                    continue

                msg_type, reply = await self.dispatch(contexts, data)
                if reply is not None:
                    await self._reply(ws, binary, msg_type, reply)
        finally:
            open_runs = sorted(contexts)
            if open_runs:
                # Runs stay running; only a run-end event may finish them.
                logger.warning(f"Runner disconnected with unfinished run(s): {', '.join(open_runs)}")
            else:
                logger.info("Runner disconnected")

        return ws

    async def dispatch(self, contexts, data):
        """Apply one event. Returns the reply type and payload, or (None, None) for heartbeats."""
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            return "error", {"message": "Message must be an object with a string 'type'"}

        msg_type = data["type"]
        request_id = data.get("requestId")
        if msg_type == "heartbeat":
            return None, None

        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {k: v for k, v in data.items() if k not in ("type", "requestId")}

        handler = self._handlers.get(msg_type)
        if handler is None:
            return "error", {"message": f"Unknown message type: {msg_type}",
                             "requestType": msg_type, "requestId": request_id}
        try:
            result = await handler(contexts, payload)
        except AuroraError as e:
            logger.warning(f"Runner event {msg_type} failed: {e.message}")
            return "error", {**e.to_payload(), "requestType": msg_type, "requestId": request_id}
        return "ack", {"requestType": msg_type, "requestId": request_id, "data": result}

    async def _reply(self, ws, binary, msg_type, payload):
        message = {"type": msg_type, "payload": payload, "timestamp": now_utc_iso()}
        try:
            if binary:
                await ws.send_bytes(msgpack.packb(message, use_bin_type=True))
            else:
                await ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"Reply {msg_type} to runner failed: {e}")

    async def _context(self, contexts, payload):
        run_id = payload.get("runId")
        if not isinstance(run_id, str) or not run_id:
            raise ValidationError("'runId' is required")
        ctx = contexts.get(run_id)
        if ctx is None:
            ctx = await self.gateway.resume(run_id)
            contexts[run_id] = ctx
        return ctx

    @staticmethod
    def _section(payload, key):
        # Event bodies may be nested under a key or sent inline next to runId.
        value = payload.get(key)
        return value if isinstance(value, dict) else payload

    # --- Event handlers ---

    async def _run_start(self, contexts, payload):
        ctx = await self.gateway.run_start(payload)
        contexts[ctx.run_id] = ctx
        return {"runId": ctx.run_id}

    async def _spec_before(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        await self.gateway.spec_before(ctx, payload.get("spec"))
        return {"runId": ctx.run_id}

    async def _spec_after(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        created = await self.gateway.spec_after(ctx, payload.get("spec"), payload.get("results"))
        return {"runId": ctx.run_id, "resultIds": [result.id for result in created]}

    async def _run_end(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        run = await self.gateway.run_end(ctx, payload.get("summary") or {})
        contexts.pop(ctx.run_id, None)
        return {"run": run.to_dict()}

    async def _test_start(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        result = await self.gateway.test_start(ctx, self._section(payload, "test"))
        return {"runId": ctx.run_id, "resultId": result.id, "state": result.state}

    async def _test_retry(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        result = await self.gateway.test_retry(ctx, self._section(payload, "test"))
        return {"runId": ctx.run_id, "resultId": result.id, "state": result.state}

    async def _test_end(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        result = await self.gateway.test_end(ctx, self._section(payload, "test"))
        return {"runId": ctx.run_id, "resultId": result.id, "state": result.state}

    async def _screenshot_captured(self, contexts, payload):
        ctx = await self._context(contexts, payload)
        screenshot = await self.gateway.screenshot_captured(ctx, self._section(payload, "screenshot"))
        return {"runId": ctx.run_id, "screenshot": screenshot.to_dict() if screenshot else None}
