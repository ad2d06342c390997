from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import httpx
import orjson
import websockets
from websockets.asyncio.client import ClientConnection, connect

from dmrelay.core import proto

log = logging.getLogger("dmrelay.cmd.client")


def history_url(server_url: str, username: str) -> str:
    """Map ws://host:port to the http(s) history URL on the same port."""

    parts = urlsplit(server_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return urlunsplit((scheme, parts.netloc, f"/api/conversations/{quote(username, safe='')}", "", ""))


class ClientApp:
    def __init__(self, server_url: str, username: str) -> None:
        self.server_url = server_url
        self.username = username
        self.ws: Optional[ClientConnection] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with connect(self.server_url) as ws:
            self.ws = ws
            await self._send({"type": "register", "username": self.username})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("Client ready. Commands: /tell <user> <msg>, /edit <id> <msg>, /typing <user>, /history, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/tell" and len(parts) >= 3:
            await self._send({"sender": self.username, "recipient": parts[1], "message": line.split(" ", 2)[2]})
        elif cmd == "/edit" and len(parts) >= 3:
            await self._send({"type": "edit", "messageId": parts[1], "newMessage": line.split(" ", 2)[2]})
        elif cmd == "/typing" and len(parts) == 2:
            await self._send({"type": "typing", "sender": self.username, "recipient": parts[1]})
        elif cmd == "/history":
            await self._show_history()
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed as exc:
            print(f"[closed] {exc}")
        finally:
            self.stop_event.set()

    def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        type_ = frame.get("type")
        if type_ in {"info", "error"}:
            print(f"[{type_}] {frame.get('message')}")
        elif type_ in proto.TYPING_TYPES:
            verb = "is typing" if type_ == "typing" else "stopped typing"
            print(f"[{frame.get('sender')} {verb}]")
        elif type_ == "edit":
            self._print_message(frame.get("message") or {}, prefix="edited ")
        elif "id" in frame:
            self._print_message(frame)
        else:
            print(proto.encode_frame(frame))

    @staticmethod
    def _print_message(record: Dict[str, Any], prefix: str = "") -> None:
        mark = " (edited)" if record.get("edited") else ""
        print(f"{prefix}[{record.get('id')}] {record.get('sender')} -> {record.get('recipient')}: "
              f"{record.get('message')}{mark}")

    async def _show_history(self) -> None:
        async with httpx.AsyncClient(timeout=10.0) as client:
            try:
                resp = await client.get(history_url(self.server_url, self.username))
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                print(f"[error] history unavailable: {exc}")
                return
        for record in reversed(resp.json()):
            self._print_message(record)

    async def _send(self, frame: Dict[str, Any]) -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode_frame(frame))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Direct-message relay terminal client")
    parser.add_argument("--server", default="ws://localhost:3000", help="ws://host:port of the relay")
    parser.add_argument("--user", dest="username", required=True, help="Username to register as")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await ClientApp(args.server, args.username).run()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
