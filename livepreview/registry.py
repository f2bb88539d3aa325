"""Registry of connected viewers and reload fan-out."""
from __future__ import annotations

import asyncio
import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import ConnectionFailure, RegistryClosed
from .logs import _log

DEFAULT_CLIENT_QUEUE = 16

# Queued in place of a message to tell a connection's sender to hang up.
CLOSE = None


class ConnState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_BY_CLIENT = "closed_by_client"
    CLOSED_BY_SERVER = "closed_by_server"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ConnState.CLOSED_BY_CLIENT, ConnState.CLOSED_BY_SERVER, ConnState.FAILED})


@dataclass
class _Connection:
    id: str
    queue: "asyncio.Queue[Optional[Dict[str, Any]]]"
    loop: asyncio.AbstractEventLoop
    state: ConnState = ConnState.CONNECTING


def _on_loop(conn: _Connection, fn: Callable[..., None], *args: Any) -> None:
    """Run ``fn`` on the connection's loop: inline if we are already on it."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is conn.loop:
        fn(*args)
        return
    try:
        conn.loop.call_soon_threadsafe(fn, *args)
    except RuntimeError as e:
        raise ConnectionFailure(conn.id, f"event loop unavailable: {e}") from e


def _hang_up(conn: _Connection) -> None:
    # Replace any backlog with a single hang-up request.
    while True:
        try:
            conn.queue.get_nowait()
        except asyncio.QueueEmpty:
            break
    conn.queue.put_nowait(CLOSE)


class ConnectionRegistry:
    """
    Id-indexed table of viewer connections.

    Membership changes and the broadcast snapshot are serialized by one lock;
    delivery happens outside it and only ever does a non-blocking put onto a
    bounded per-connection queue, on that connection's event loop. A
    connection whose queue is full is considered stuck and is dropped.
    """

    def __init__(self, client_queue_size: int = DEFAULT_CLIENT_QUEUE) -> None:
        self._lock = threading.Lock()
        self._conns: Dict[str, _Connection] = {}
        self._closed = False
        self._queue_size = client_queue_size
        self.last_state: Dict[str, ConnState] = {}

    def register(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> str:
        conn_loop = loop or asyncio.get_running_loop()
        cid = uuid.uuid4().hex
        conn = _Connection(id=cid, queue=asyncio.Queue(maxsize=self._queue_size), loop=conn_loop)
        with self._lock:
            if self._closed:
                raise RegistryClosed("server is shutting down")
            conn.state = ConnState.OPEN
            self._conns[cid] = conn
            self.last_state[cid] = conn.state
            total = len(self._conns)
        _log("clients", f"[clients] open id={cid} total={total}")
        return cid

    def unregister(self, cid: str, state: ConnState = ConnState.CLOSED_BY_CLIENT) -> bool:
        """Remove a connection and ask its sender to hang up.

        Returns False if it was already gone.
        """
        with self._lock:
            conn = self._conns.pop(cid, None)
            if conn is None:
                return False
            conn.state = state
            self.last_state[cid] = state
            total = len(self._conns)
        _log("clients", f"[clients] {state.value} id={cid} total={total}")
        try:
            _on_loop(conn, _hang_up, conn)
        except ConnectionFailure:
            pass  # loop already gone, nobody is listening
        return True

    def is_registered(self, cid: str) -> bool:
        with self._lock:
            return cid in self._conns

    def state_of(self, cid: str) -> Optional[ConnState]:
        with self._lock:
            conn = self._conns.get(cid)
            if conn is not None:
                return conn.state
            return self.last_state.get(cid)

    def count(self) -> int:
        with self._lock:
            return len(self._conns)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._conns)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def broadcast(self, version: int) -> int:
        """Queue ``{"version": version}`` for every registered connection.

        Returns how many connections the message was handed to. Safe to call
        from any thread.
        """
        with self._lock:
            targets = list(self._conns.values())
        message = {"version": int(version)}
        delivered = 0
        for conn in targets:
            try:
                _on_loop(conn, self._deliver, conn, message)
                delivered += 1
            except ConnectionFailure as e:
                _log("clients", f"[clients] drop id={e.conn_id} reason={e.reason}", logging.WARNING)
                self.unregister(conn.id, ConnState.FAILED)
        _log("clients", f"[clients] broadcast version={version} delivered={delivered}/{len(targets)}")
        return delivered

    def _deliver(self, conn: _Connection, message: Dict[str, Any]) -> None:
        if conn.state in TERMINAL_STATES:
            return
        try:
            conn.queue.put_nowait(message)
        except asyncio.QueueFull:
            _log("clients", f"[clients] drop id={conn.id} reason=queue full", logging.WARNING)
            self.unregister(conn.id, ConnState.FAILED)

    async def receive(self, cid: str) -> Optional[Dict[str, Any]]:
        """Wait for the next message for ``cid``; None means hang up."""
        with self._lock:
            conn = self._conns.get(cid)
        if conn is None:
            return CLOSE
        return await conn.queue.get()

    def close(self) -> int:
        """Refuse new registrations and tell every open connection to hang up."""
        with self._lock:
            self._closed = True
            conns = list(self._conns.values())
            self._conns.clear()
            for conn in conns:
                conn.state = ConnState.CLOSED_BY_SERVER
                self.last_state[conn.id] = conn.state
        for conn in conns:
            try:
                _on_loop(conn, _hang_up, conn)
            except ConnectionFailure:
                continue
        if conns:
            _log("clients", f"[clients] closed {len(conns)} connection(s) on shutdown")
        return len(conns)
