"""A command received from last order, answered at most once."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from misaka.jobs import Job

logger = logging.getLogger(__name__)

Reply = Callable[[dict[str, Any]], Any]


class Message:
    """Command text plus the route that matched it and a one-shot reply channel."""

    def __init__(self, text: str, reply: Reply | None = None):
        self.text = text
        self.route = ""
        self.captures: tuple[str | None, ...] = ()
        self.job: Job | None = None
        self._reply = reply
        self._done = False

    @property
    def done(self) -> bool:
        """Whether a reply has already been delivered."""
        return self._done

    def send(self, text: str, **options: Any) -> None:
        """Reply normally."""
        self._deliver({"text": text}, options)

    def error(self, text: str, **options: Any) -> None:
        """Reply with an error."""
        self._deliver({"error": True, "text": text}, options)

    def _deliver(self, payload: dict[str, Any], options: dict[str, Any]) -> None:
        if self._done:
            logger.debug("dropping extra reply for %r: %s", self.text, payload.get("text"))
            return

        self._done = True
        if options:
            payload["options"] = options
        if self._reply is None:
            logger.info("reply to %r (no ack requested): %s", self.text, payload.get("text"))
            return
        self._reply(payload)

    def __repr__(self) -> str:
        return f"Message(text={self.text!r}, route={self.route!r}, done={self._done})"
