from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Optional, Sequence
from urllib.parse import unquote, urlsplit

import orjson
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

from dmrelay.core.store import MessageStore, StoreError

log = logging.getLogger("dmrelay.server.history")

HISTORY_PREFIX = "/api/conversations/"


class HistoryEndpoint:
    """``GET /api/conversations/<username>`` served before the WebSocket handshake.

    Plugged into ``serve(process_request=...)``: returning a Response answers
    the request over plain HTTP, returning None lets the handshake proceed.
    """

    def __init__(self, messages: MessageStore, allowed_origins: Optional[Sequence[str]] = None) -> None:
        self.messages = messages
        self.allowed_origins = None if allowed_origins is None else list(allowed_origins)

    async def __call__(self, connection: Any, request: Request) -> Optional[Response]:
        path = urlsplit(request.path).path
        if not path.startswith(HISTORY_PREFIX):
            return None

        origin = request.headers.get("Origin")
        username = unquote(path[len(HISTORY_PREFIX):])
        if not username or "/" in username:
            return self._json(HTTPStatus.NOT_FOUND, {"error": "Not found"}, origin)

        try:
            conversation = await self.messages.conversation(username)
        except StoreError:
            log.exception("Error fetching conversations for %s", username)
            return self._json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Internal server error"}, origin)

        return self._json(HTTPStatus.OK, [m.to_wire() for m in conversation], origin)

    def _json(self, status: HTTPStatus, body: Any, origin: Optional[str]) -> Response:
        payload = orjson.dumps(body)
        headers = Headers()
        headers["Content-Type"] = "application/json"
        headers["Content-Length"] = str(len(payload))
        headers["Connection"] = "close"
        if self.allowed_origins is None:
            headers["Access-Control-Allow-Origin"] = "*"
        elif origin is not None and origin in self.allowed_origins:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Access-Control-Allow-Credentials"] = "true"
            headers["Vary"] = "Origin"
        return Response(status.value, status.phrase, headers, payload)


__all__ = ["HistoryEndpoint", "HISTORY_PREFIX"]
