from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.protocol import State

from dmrelay.core import proto
from dmrelay.core.delivery import DeliveryCoordinator
from dmrelay.core.registry import ConnectionRegistry
from dmrelay.core.router import MessageRouter
from dmrelay.core.store import Database, MessageStore, UserDirectory
from dmrelay.server.history import HistoryEndpoint

log = logging.getLogger("dmrelay.server.runtime")

DEFAULT_LISTEN = "0.0.0.0:3000"
DEFAULT_ORIGINS = ["http://localhost:8000"]


@dataclass(slots=True, eq=False)
class Session:
    """One live connection, bound to at most one username."""

    websocket: Any
    identity: Optional[str] = None
    remote: str = "?"
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def alive(self) -> bool:
        return self.websocket.state is State.OPEN

    async def send(self, frame: Dict[str, Any]) -> bool:
        """Write one frame. False if the transport closed before it went out."""

        text = proto.encode_frame(frame)
        async with self.send_lock:
            # re-check under the lock; a registry lookup may be stale by now
            if not self.alive:
                return False
            try:
                await self.websocket.send(text)
            except websockets.ConnectionClosed:
                return False
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code, reason)


class ServerRuntime:
    """Direct-message relay: WebSocket sessions plus the history endpoint on one port."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", DEFAULT_LISTEN))
        self.db_path = config.get("db_path", "chat.db")
        self.allowed_origins = config.get("allowed_origins", DEFAULT_ORIGINS)

        self.db = Database(self.db_path)
        self.registry = ConnectionRegistry()
        self.users = UserDirectory(self.db)
        self.messages = MessageStore(self.db)
        self.coordinator = DeliveryCoordinator(self.registry, self.users, self.messages)
        self.router = MessageRouter(self.coordinator)
        self.history = HistoryEndpoint(self.messages, self.allowed_origins)

        self._sessions: list[Session] = []
        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.db.open()

        # None admits clients that send no Origin header (non-browser tools)
        origins = None if self.allowed_origins is None else [*self.allowed_origins, None]
        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            origins=origins,
            process_request=self.history,
        )
        log.info("Relay listening on ws://%s:%d", self.listen_host, self.bound_port)

    async def stop(self) -> None:
        # concurrently, so one silent peer does not hold up the rest
        await asyncio.gather(*(s.close(1001, "server shutting down") for s in list(self._sessions)))
        await self.coordinator.drain()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        await self.db.close()

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful when configured with port 0)."""

        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        session = Session(websocket=websocket, remote=self._fmt_remote(websocket))
        self._sessions.append(session)
        log.info("New client connected from %s", session.remote)
        try:
            async for raw in websocket:
                try:
                    await self.router.dispatch(session, raw)
                except Exception:
                    log.exception("Unhandled error on frame from %s", session.remote)
                    await session.send(proto.error_frame("Error processing message"))
        except websockets.ConnectionClosed:
            pass
        finally:
            self.coordinator.disconnect(session)
            try:
                self._sessions.remove(session)
            except ValueError:
                pass

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["Session", "ServerRuntime"]
