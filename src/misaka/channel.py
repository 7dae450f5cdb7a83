"""Realtime channel to last order: named events with acks over one WebSocket.

Frames are JSON text messages:
    {"event": "cmd", "args": [...], "id": 7}   event, ``id`` only when an ack is wanted
    {"ack": 7, "args": [...]}                  answer to the event with that id

The channel never reconnects on its own; the session decides when to log in
again.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Callable
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from misaka.errors import TransportError

logger = logging.getLogger(__name__)

OPEN_TIMEOUT = 20.0

Ack = Callable[..., Any]
EventHandler = Callable[[str, list[Any], Ack | None], Any]


def channel_url(server_url: str, path: str, token: str) -> str:
    """Map the HTTP base URL of last order to the WebSocket URL of ``path``."""
    parts = urlsplit(server_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, path, urlencode({"token": token}), ""))


class Channel:
    """One live WebSocket connection speaking the event/ack framing."""

    def __init__(self, websocket):
        self._ws = websocket
        self._ids = itertools.count(1)
        self._acks: dict[int, Ack] = {}
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    async def open(cls, url: str, open_timeout: float = OPEN_TIMEOUT) -> Channel:
        try:
            websocket = await websockets.connect(url, open_timeout=open_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"cannot open realtime channel: {e}") from e
        return cls(websocket)

    async def emit(self, event: str, *args: Any, ack: Ack | None = None) -> None:
        frame: dict[str, Any] = {"event": event, "args": list(args)}
        if ack is not None:
            frame["id"] = ack_id = next(self._ids)
            self._acks[ack_id] = ack
        try:
            await self._ws.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed as e:
            if ack is not None:
                self._acks.pop(frame["id"], None)
            raise TransportError(f"channel closed while sending {event}") from e

    async def serve(self, handler: EventHandler) -> None:
        """Read frames until the connection closes.

        ``handler(event, args, ack)`` gets every inbound event; ``ack`` is
        None when the server did not ask for one.
        """
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("dropping malformed frame: %.200r", raw)
                    continue
                if not isinstance(frame, dict):
                    logger.warning("dropping malformed frame: %.200r", raw)
                    continue

                if "ack" in frame:
                    self._resolve_ack(frame)
                    continue

                event = frame.get("event")
                if not event:
                    logger.debug("frame without event: %.200r", raw)
                    continue
                args = frame.get("args") or []
                if not isinstance(args, list):
                    args = [args]
                ack = self._make_ack(frame["id"]) if frame.get("id") is not None else None

                result = handler(event, args, ack)
                if inspect.isawaitable(result):
                    await result
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug("channel closed: %s", e)
        finally:
            self._acks.clear()

    async def close(self) -> None:
        await self._ws.close()

    def _resolve_ack(self, frame: dict[str, Any]) -> None:
        callback = self._acks.pop(frame.get("ack"), None)
        if callback is None:
            logger.debug("ack for unknown id %r", frame.get("ack"))
            return
        args = frame.get("args") or []
        try:
            callback(*args)
        except Exception:
            logger.exception("ack callback failed")

    def _make_ack(self, ack_id: Any) -> Ack:
        def ack(*args: Any) -> None:
            task = asyncio.ensure_future(self._send_ack(ack_id, list(args)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return ack

    async def _send_ack(self, ack_id: Any, args: list[Any]) -> None:
        try:
            await self._ws.send(json.dumps({"ack": ack_id, "args": args}))
        except websockets.exceptions.ConnectionClosed:
            logger.warning("channel closed before ack %s could be sent", ack_id)
