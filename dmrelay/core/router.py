from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Union

from dmrelay.core import proto
from dmrelay.core.delivery import DeliveryCoordinator

if TYPE_CHECKING:
    from dmrelay.server.runtime import Session


log = logging.getLogger("dmrelay.router")


class MessageRouter:
    """Classifies each inbound frame and hands it to exactly one handler."""

    def __init__(self, coordinator: DeliveryCoordinator) -> None:
        self.coordinator = coordinator

    async def dispatch(self, session: "Session", raw: Union[str, bytes]) -> str:
        """Route one raw frame. Returns the name of the handler that ran."""

        frame = proto.parse_frame(raw)
        if isinstance(frame, proto.RegisterFrame):
            await self.coordinator.register(session, frame)
            return "register"
        if isinstance(frame, proto.TypingFrame):
            await self.coordinator.typing(session, frame)
            return "typing"
        if isinstance(frame, proto.ChatFrame):
            await self.coordinator.chat(session, frame)
            return "chat"
        if isinstance(frame, proto.EditFrame):
            await self.coordinator.edit(session, frame)
            return "edit"

        log.debug("Dropped frame from %s (%s)", session.remote, frame.reason)
        return "dropped"


__all__ = ["MessageRouter"]
