"""Session with last order: login, ordered outbound delivery, reconnect.

Login flow:
1. POST /challenge with a signed timestamp to get a challenge
2. POST /login with the signed challenge to get a session token
3. Open the realtime channel with that token

Login never gives up: any failure is retried after a fixed delay. Outbound
events are queued regardless of the connection state and replayed in order
once a channel is up. Inbound events go to the router (``cmd``), the job
engine (``job``), the plugin manager (``scripts``) and the brain (``brain``).
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx

from misaka.channel import Channel, channel_url
from misaka.errors import TransportError

if TYPE_CHECKING:
    from misaka.brain import Brain
    from misaka.config import MisakaConfig
    from misaka.jobs import JobEngine
    from misaka.plugins import PluginManager
    from misaka.router import Route, Router

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 15.0


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class Outbound:
    event: str
    payload: Any
    ack: Callable[..., Any] | None = None
    cancelled: bool = False


def sign(text: str, secret: str) -> str:
    """Base64 HMAC-SHA1 of ``text`` keyed with the shared secret."""
    digest = hmac.new(secret.encode(), text.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


class Session:
    """The single connection between this agent and last order."""

    def __init__(
        self,
        config: MisakaConfig,
        router: Router,
        jobs: JobEngine,
        plugins: PluginManager | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.router = router
        self.jobs = jobs
        self.plugins = plugins
        self.brain: Brain | None = None
        self._transport = transport

        self._state = SessionState.DISCONNECTED
        self._channel: Channel | None = None
        self._connected = asyncio.Event()
        self._closed = False

        self._queue: list[Outbound] = []
        self._flushing = False

        self._login_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def node(self) -> str:
        return self.config.node

    @property
    def pending(self) -> int:
        """Number of queued, not yet flushed outbound events."""
        return len(self._queue)

    # --- outbound ---

    def send(self, event: str, payload: Any = None, ack: Callable[..., Any] | None = None) -> None:
        """Queue an event for last order. Delivery happens once a channel is up."""
        self._enqueue(Outbound(event, payload, ack))

    async def request(self, event: str, payload: Any = None) -> Any:
        """Send an event and wait for the server's ack payload."""
        future = asyncio.get_running_loop().create_future()

        def ack(*args: Any) -> None:
            # The caller may have given up (timeout); a late ack is dropped.
            if not future.done():
                future.set_result(args[0] if args else None)

        item = self._enqueue(Outbound(event, payload, ack))

        def discard(f: asyncio.Future) -> None:
            # Nobody waits for the answer any more; do not ship the request.
            if f.cancelled():
                item.cancelled = True
                with contextlib.suppress(ValueError):
                    self._queue.remove(item)

        future.add_done_callback(discard)
        return await future

    def _enqueue(self, item: Outbound) -> Outbound:
        self._queue.append(item)
        self._schedule_flush()
        return item

    def say(self, text: str, to: str = "") -> None:
        """Broadcast a chat message, addressed to ``to`` when given."""
        if not text:
            return
        logger.debug("sending text. [to:%s] [text:%s]", to, text)
        self.send("message", f"@{to}: {text}" if to else text)

    def report_job(self, job_id: str, job_hash: str, to: str, text: str) -> None:
        self.send("job", {"to": to, "text": text, "jobId": job_id, "jobHash": job_hash})

    def register_routes(self, routes: list[Route] | None = None) -> None:
        """Announce enabled routes to last order (all of them by default)."""
        for route in self.router.routes if routes is None else routes:
            if route.enabled:
                self.send("register", route.info().to_dict())

    # --- connection ---

    def ensure_connected(self) -> None:
        """Start logging in unless connected or a login is already running."""
        if self._closed or self._state is not SessionState.DISCONNECTED:
            return
        logger.debug("try to connect...")
        self._state = SessionState.CONNECTING
        self._login_task = asyncio.get_running_loop().create_task(self._login())

    async def close(self) -> None:
        """Drop the connection for good."""
        self._closed = True
        for task in (self._login_task, self._receive_task, self._flush_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._channel is not None:
            with contextlib.suppress(Exception):
                await self._channel.close()
        self._channel = None
        self._connected.clear()
        self._state = SessionState.DISCONNECTED
        logger.info("session closed")

    async def authenticate(self) -> str:
        """Run the challenge/login exchange and return the session token."""
        node = self.config.node
        secret = self.config.shared_secret
        ts = str(int(time.time() * 1000))

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
            challenge = await self._post(client, "/challenge", {
                "node": node,
                "ts": ts,
                "sig": sign(f"{ts}&{node}", secret),
            })
            return await self._post(client, "/login", {
                "challenge": challenge,
                "node": node,
                "sig": sign(f"{challenge}&{node}", secret),
            })

    async def open_channel(self, token: str) -> Channel:
        return await Channel.open(channel_url(self.config.server_url, self.config.namespace, token))

    async def _post(self, client: httpx.AsyncClient, path: str, form: dict[str, str]) -> str:
        try:
            resp = await client.post(self._url(path), data=form)
        except httpx.HTTPError as e:
            raise TransportError(f"fail to POST {path}: {e}") from e

        if not resp.is_success:
            raise TransportError(
                f"fail to POST {path}: status {resp.status_code} body {resp.text[:200]!r}"
            )
        return resp.text

    def _url(self, path: str) -> str:
        parts = urlsplit(self.config.server_url)
        return urlunsplit((parts.scheme, parts.netloc, path, "", ""))

    async def _login(self) -> None:
        interval = self.config.timing.login_retry_interval
        while not self._closed:
            try:
                token = await self.authenticate()
                channel = await self.open_channel(token)
            except TransportError as e:
                logger.warning("login failed, retrying in %ss: %s", interval, e)
                await asyncio.sleep(interval)
                continue

            self._on_connect(channel)
            return

    def _on_connect(self, channel: Channel) -> None:
        logger.info("misaka connects to last order as %s", self.config.node)
        self._channel = channel
        self._state = SessionState.CONNECTED
        self.register_routes()
        self._connected.set()
        self._receive_task = asyncio.get_running_loop().create_task(self._receive(channel))

    async def _receive(self, channel: Channel) -> None:
        try:
            await channel.serve(self._handle_event)
        except Exception:
            logger.exception("realtime channel failed")
        self._on_disconnect(channel)

    def _on_disconnect(self, channel: Channel) -> None:
        if self._channel is not channel:
            return
        logger.info("misaka lost connection with last order")
        self._channel = None
        self._connected.clear()
        self._state = SessionState.DISCONNECTED
        self.ensure_connected()

    # --- flushing ---

    def _schedule_flush(self) -> None:
        if self._flushing or self._closed:
            return
        self._flushing = True
        self._flush_task = asyncio.get_running_loop().create_task(self._flush())

    async def _flush(self) -> None:
        try:
            while self._queue:
                batch, self._queue = self._queue, []
                channel = await self._wait_connected()

                sent = 0
                try:
                    for item in batch:
                        if not item.cancelled:
                            await channel.emit(item.event, item.payload, ack=item.ack)
                        sent += 1
                except TransportError as e:
                    logger.warning("channel lost during flush, requeued %d event(s): %s", len(batch) - sent, e)
                    self._queue[:0] = batch[sent:]
                    self._on_disconnect(channel)
        finally:
            self._flushing = False

    async def _wait_connected(self) -> Channel:
        while True:
            self.ensure_connected()
            await self._connected.wait()
            if self._channel is not None:
                return self._channel

    # --- inbound ---

    def _handle_event(self, event: str, args: list[Any], ack: Callable[..., Any] | None) -> None:
        payload = args[0] if args else None

        if event == "cmd":
            self._on_command(payload, ack)
        elif event == "job":
            self._on_job(payload)
        elif event == "scripts":
            self._on_scripts(args)
        elif event == "brain":
            self._on_brain(payload)
        else:
            logger.debug("ignoring unknown event %s", event)

    def _on_command(self, payload: Any, ack: Callable[..., Any] | None) -> None:
        job_id = job_hash = None
        to = ""
        if isinstance(payload, dict):
            text = str(payload.get("cmd") or "")
            if payload.get("jobId") is not None:
                job_id = str(payload["jobId"])
            if payload.get("jobHash") is not None:
                job_hash = str(payload["jobHash"])
            to = str(payload.get("to") or "")
        else:
            text = str(payload or "")

        self.router.dispatch(text.strip(), ack, job_id=job_id, job_hash=job_hash, to=to)

    def _on_job(self, payload: Any) -> None:
        if not isinstance(payload, dict) or payload.get("jobId") is None:
            logger.warning("malformed job control event: %r", payload)
            return
        self.jobs.control(
            str(payload.get("action") or ""),
            str(payload["jobId"]),
            str(payload.get("jobHash") or ""),
            self.report_job,
        )

    def _on_scripts(self, args: list[Any]) -> None:
        if self.plugins is None:
            logger.debug("no plugin manager, ignoring scripts event")
            return
        action = args[0] if args else ""
        states = args[1] if len(args) > 1 and isinstance(args[1], dict) else {}
        enabled = self.plugins.apply(str(action), states)
        if enabled:
            self.register_routes(enabled)

    def _on_brain(self, payload: Any) -> None:
        if self.brain is None:
            return
        self.brain.load(payload if isinstance(payload, dict) else {}, silent=True)
