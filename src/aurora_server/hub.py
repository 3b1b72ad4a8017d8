"""
Real-time hub for Aurora server.

Transport-agnostic, room-scoped publish/subscribe. Transports (see
websocket.py) wrap their connections in a Session and register it; the
ingestion path publishes typed events without knowing who listens.

Each session owns a bounded outbound queue drained by its own writer task:
publishing never awaits a network send, delivery order per session equals
emission order, and a failing session is dropped without affecting others.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from . import __version__
from .analytics import get_overview_statistics
from .errors import ChannelError, PersistenceError
from .utils import log_event, now_utc_iso

logger = logging.getLogger(__name__)

ROOM_ALL_RUNS = "test-runs"
ROOM_TEST_UPDATES = "test-updates"

FEATURES = [
    "real-time-updates",
    "test-filtering",
    "flaky-test-detection",
    "statistics",
    "screenshots",
]


def run_room(run_id: str) -> str:
    return f"test-run:{run_id}"


class Session(ABC):
    """One connected dashboard client, independent of transport."""

    def __init__(self, session_id: Optional[str] = None, info: Optional[Dict[str, Any]] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self.info = {"connectedAt": now_utc_iso(), **(info or {})}

    @abstractmethod
    async def send(self, message: Dict[str, Any]):
        """Deliver one envelope. Raise ChannelError when the peer is gone."""

    async def close(self):
        """Close the underlying transport."""


class RealtimeHub:
    """Rooms, sessions and typed event emitters."""

    def __init__(self, database=None, queue_size: int = 1000, recent_runs: int = 5,
                 enabled: bool = True):
        self.database = database
        self.queue_size = queue_size
        self.recent_runs = recent_runs
        self.enabled = enabled
        self.sessions: Dict[str, Session] = {}
        self.rooms: Dict[str, set] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._writers: Dict[str, asyncio.Task] = {}

    # --- Session management ---

    def register(self, session: Session):
        """Start delivering to a session."""
        queue = asyncio.Queue(maxsize=self.queue_size)
        self.sessions[session.session_id] = session
        self._queues[session.session_id] = queue
        self._writers[session.session_id] = asyncio.create_task(self._write_loop(session, queue))
        log_event("session_connected", session_id=session.session_id, sessions=len(self.sessions))

    async def unregister(self, session_id: str):
        """Forget a session and all its room memberships."""
        task = self._writers.pop(session_id, None)
        self._forget(session_id)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _forget(self, session_id: str):
        if self.sessions.pop(session_id, None) is None:
            return
        self._queues.pop(session_id, None)
        for room in list(self.rooms):
            members = self.rooms[room]
            members.discard(session_id)
            if not members:
                del self.rooms[room]
        log_event("session_disconnected", session_id=session_id, sessions=len(self.sessions))

    async def _write_loop(self, session: Session, queue: asyncio.Queue):
        try:
            while True:
                message = await queue.get()
                try:
                    await session.send(message)
                finally:
                    queue.task_done()
        except ChannelError as e:
            logger.warning(f"Dropping session {session.session_id}: {e.message}")
            self._writers.pop(session.session_id, None)
            self._forget(session.session_id)
            await session.close()
        finally:
            # Undelivered messages must not block flush().
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()

    def join(self, session_id: str, room: str):
        if session_id not in self.sessions:
            raise ChannelError(f"Unknown session: {session_id}")
        self.rooms.setdefault(room, set()).add(session_id)
        logger.debug(f"Session {session_id} joined {room}")

    def leave(self, session_id: str, room: str):
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(session_id)
        if not members:
            del self.rooms[room]
        logger.debug(f"Session {session_id} left {room}")

    def members(self, room: str):
        return set(self.rooms.get(room, ()))

    # --- Delivery ---

    @staticmethod
    def envelope(event: str, payload: Any) -> Dict[str, Any]:
        return {"type": event, "payload": payload, "timestamp": now_utc_iso()}

    def send_to(self, session_id: str, event: str, payload: Any) -> bool:
        """Queue one event for one session. Returns False if it could not be queued."""
        queue = self._queues.get(session_id)
        if queue is None:
            return False
        try:
            queue.put_nowait(self.envelope(event, payload))
            return True
        except asyncio.QueueFull:
            logger.warning(f"Session {session_id} is not keeping up; disconnecting")
            session = self.sessions.get(session_id)
            task = self._writers.pop(session_id, None)
            self._forget(session_id)
            if task is not None:
                task.cancel()
            if session is not None:
                asyncio.create_task(session.close())
            return False

    def publish(self, room: str, event: str, payload: Any) -> int:
        """Fire-and-forget delivery to the current members of a room."""
        if not self.enabled:
            return 0
        return sum(1 for sid in list(self.rooms.get(room, ())) if self.send_to(sid, event, payload))

    def broadcast(self, event: str, payload: Any) -> int:
        """Fire-and-forget delivery to every connected session."""
        if not self.enabled:
            return 0
        return sum(1 for sid in list(self.sessions) if self.send_to(sid, event, payload))

    async def flush(self, timeout: Optional[float] = None):
        """Wait until every queued message has been handed to its transport."""
        waits = [queue.join() for queue in list(self._queues.values())]
        if waits:
            await asyncio.wait_for(asyncio.gather(*waits), timeout=timeout)

    # --- Typed emitters ---

    def run_started(self, run):
        data = run.to_dict()
        self.broadcast("test-run:started", data)
        self.publish(ROOM_ALL_RUNS, "test-runs:update", {"action": "started", "run": data})

    def run_completed(self, run):
        data = run.to_dict()
        self.broadcast("test-run:completed", data)
        self.publish(ROOM_ALL_RUNS, "test-runs:update", {"action": "completed", "run": data})
        self.publish(run_room(run.id), "test-run:completed", data)

    def run_deleted(self, run_id):
        self.publish(ROOM_ALL_RUNS, "test-runs:update", {"action": "deleted", "runId": run_id})
        self.publish(run_room(run_id), "test-run:deleted", {"runId": run_id})

    def test_started(self, result):
        self.publish(run_room(result.run_id), "test:started", result.to_dict())

    def test_completed(self, result):
        data = result.to_dict()
        self.publish(run_room(result.run_id), "test:completed", data)
        self.publish(ROOM_TEST_UPDATES, "test:update", data)

    def test_updated(self, result, action="updated"):
        data = {"action": action, "testResult": result.to_dict()}
        self.publish(run_room(result.run_id), "test:update", data)
        self.publish(ROOM_TEST_UPDATES, "test:update", data)

    def screenshot_taken(self, result, screenshot):
        self.publish(run_room(result.run_id), "screenshot:taken", {
            "testResult": result.to_dict(),
            "screenshotPath": screenshot.path,
            "screenshot": screenshot.to_dict(),
        })

    def statistics_updated(self, statistics):
        self.broadcast("statistics:update", statistics)

    # --- Snapshots ---

    def server_info(self):
        return {"version": __version__, "features": list(FEATURES)}

    async def welcome_snapshot(self) -> Dict[str, Any]:
        """Initial state for a newly connected session. Never raises on store errors."""
        snapshot = {
            "timestamp": now_utc_iso(),
            "statistics": None,
            "recentRuns": [],
            "serverInfo": self.server_info(),
        }
        if self.database is None:
            return snapshot
        try:
            snapshot["statistics"] = await get_overview_statistics(self.database)
            runs = await self.database.runs.find_recent(self.recent_runs)
            snapshot["recentRuns"] = [run.to_dict() for run in runs]
        except PersistenceError as e:
            logger.error(f"Failed to build welcome snapshot: {e.message}")
            snapshot["issues"] = [e.message]
        return snapshot

    async def statistics_snapshot(self):
        """Current statistics for a broadcast, or None if the store is unavailable."""
        if self.database is None:
            return None
        try:
            return await get_overview_statistics(self.database)
        except PersistenceError as e:
            logger.error(f"Failed to assemble statistics: {e.message}")
            return None

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "connectedClients": len(self.sessions),
            "rooms": {room: len(members) for room, members in sorted(self.rooms.items())},
            "clients": [
                {"id": sid, **session.info,
                 "rooms": sorted(r for r, m in self.rooms.items() if sid in m)}
                for sid, session in self.sessions.items()
            ],
        }

    async def disconnect_all(self, timeout: float = 5.0):
        """Flush pending events, then close every session within `timeout` seconds."""
        if not self.sessions:
            return
        try:
            await self.flush(timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out flushing real-time sessions during shutdown")
        sessions = list(self.sessions.values())
        for session in sessions:
            await self.unregister(session.session_id)
        closes = [session.close() for session in sessions]
        try:
            await asyncio.wait_for(asyncio.gather(*closes, return_exceptions=True), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing real-time sessions during shutdown")
        log_event("sessions_drained", count=len(sessions))
