from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from dmrelay.server.runtime import Session


"""
Connection Registry
-------------------
Single source of truth for "who is online": username -> live Session.

Invariants
==========
- At most one Session per username. Registering a bound name overwrites it.
- At most one username per Session. Re-registering a Session under another
  name drops its older binding first.
- ``unregister`` only removes the entry still pointing at the given Session,
  so a late close of a superseded connection cannot evict its replacement.

Every method is synchronous and never awaits; under a single asyncio loop no
handler can interleave inside them, so no lock is taken.
"""


log = logging.getLogger("dmrelay.registry")


class ConnectionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, "Session"] = {}

    def register(self, identity: str, session: "Session") -> Optional["Session"]:
        """Bind ``identity`` to ``session``.

        Returns the previously bound Session when a *different* one was
        replaced, otherwise None.
        """
        if session.identity and session.identity != identity:
            if self._sessions.get(session.identity) is session:
                del self._sessions[session.identity]
                log.info("%s rebound as %s", session.identity, identity)

        previous = self._sessions.get(identity)
        self._sessions[identity] = session
        session.identity = identity
        if previous is not None and previous is not session:
            log.info("%s re-registered; superseding %s", identity, previous.remote)
            return previous
        return None

    def lookup(self, identity: str) -> Optional["Session"]:
        return self._sessions.get(identity)

    def unregister(self, session: "Session") -> Optional[str]:
        """Drop the binding held by ``session``. Returns the freed name, if any."""
        for identity, bound in list(self._sessions.items()):
            if bound is session:
                self._sessions.pop(identity, None)
                return identity
        return None

    def online(self) -> list[str]:
        return sorted(self._sessions)

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["ConnectionRegistry"]
