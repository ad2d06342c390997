from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from dmrelay.core import proto
from dmrelay.core.registry import ConnectionRegistry
from dmrelay.core.store import MessageStore, StoreError, UserDirectory

if TYPE_CHECKING:
    from dmrelay.server.runtime import Session


log = logging.getLogger("dmrelay.delivery")

# private-use close code sent to a connection whose username was claimed elsewhere
CLOSE_SUPERSEDED = 4000


class DeliveryCoordinator:
    """Persists each routed action, then pushes frames to the online sessions involved."""

    def __init__(self, registry: ConnectionRegistry, users: UserDirectory, messages: MessageStore) -> None:
        self.registry = registry
        self.users = users
        self.messages = messages
        self._closing: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, session: "Session", frame: proto.RegisterFrame) -> None:
        username = frame.username
        try:
            user = await self.users.find(username)
            if user is None:
                user = await self.users.create(username)
            else:
                log.info("User %s already exists in the database", username)
        except StoreError:
            log.exception("Error registering user %s", username)
            await session.send(proto.error_frame("Error registering user"))
            return

        # the connection may have gone away while the directory was busy
        if not session.alive:
            log.info("Dropped registration of %s: connection closed", username)
            return

        previous = self.registry.register(user.username, session)
        log.info("%s connected from %s", username, session.remote)
        await session.send(proto.info_frame(f"Registered as {username}"))

        if previous is not None:
            await previous.send(proto.info_frame(f"{username} signed in from another connection"))
            # the old peer may never answer the close handshake; do not wait on it here
            task = asyncio.create_task(previous.close(CLOSE_SUPERSEDED, "superseded by a newer connection"))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    # ------------------------------------------------------------------
    # Typing indicators
    # ------------------------------------------------------------------

    async def typing(self, session: "Session", frame: proto.TypingFrame) -> None:
        # offline recipients simply miss the signal
        await self.deliver(frame.recipient, proto.typing_frame(frame))

    # ------------------------------------------------------------------
    # Chat send / edit
    # ------------------------------------------------------------------

    async def chat(self, session: "Session", frame: proto.ChatFrame) -> None:
        try:
            msg = await self.messages.insert(frame.sender, frame.recipient, frame.message)
        except StoreError:
            log.exception("Error saving message %s -> %s", frame.sender, frame.recipient)
            await session.send(proto.error_frame("Error processing message"))
            return
        log.info("Message %s saved: %s -> %s", msg.id, msg.sender, msg.recipient)

        record = msg.to_wire()
        target = self.registry.lookup(msg.recipient)
        delivered = target is not None and await target.send(record)
        if not delivered:
            log.info("Recipient %s is offline", msg.recipient)
            await session.send(proto.info_frame(f"Recipient {msg.recipient} is offline"))

        own = self.registry.lookup(msg.sender)
        if own is not None and not (delivered and own is target):
            await own.send(record)

    async def edit(self, session: "Session", frame: proto.EditFrame) -> None:
        try:
            msg = await self.messages.update(frame.message_id, frame.new_message)
        except StoreError:
            log.exception("Error editing message %s", frame.message_id)
            await session.send(proto.error_frame("Error editing message"))
            return
        if msg is None:
            log.debug("Edit of unknown message %s ignored", frame.message_id)
            return
        log.info("Message %s edited", msg.id)

        notice = proto.edit_frame(msg.to_wire())
        notified: list["Session"] = []
        for name in (msg.recipient, msg.sender):
            target = self.registry.lookup(name)
            if target is None or any(target is s for s in notified):
                continue
            notified.append(target)
            await target.send(notice)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self, session: "Session") -> Optional[str]:
        identity = self.registry.unregister(session)
        if identity:
            log.info("%s disconnected", identity)
        return identity

    async def drain(self) -> None:
        """Wait for superseded connections that are still closing."""

        if not self._closing:
            return
        results = await asyncio.gather(*list(self._closing), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                log.warning("Closing a superseded connection failed: %r", result)

    async def deliver(self, identity: str, frame: Dict[str, Any]) -> bool:
        """Push ``frame`` to ``identity`` if online. False when nobody received it."""

        target = self.registry.lookup(identity)
        if target is None:
            return False
        return await target.send(frame)


__all__ = ["DeliveryCoordinator", "CLOSE_SUPERSEDED"]
