"""Command router: pattern-based dispatch to plugin handlers.

Routes are tried in registration order and the first match wins. Plugins
are loaded in alphabetical order and register their routes in source order,
so the order is deterministic. Plugin authors keep their patterns from
overlapping, usually by giving every command its own leading keyword.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Sequence

from misaka.errors import HandlerError, ProcessError, RouteError, RouteNotFoundError
from misaka.jobs import format_result
from misaka.message import Message, Reply

if TYPE_CHECKING:
    from misaka.jobs import Job, JobEngine

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Any]


@dataclass
class RouteSpec:
    """What a plugin declares for one command.

    ``job`` marks handlers that run subprocesses: their Message carries a
    Job, and the job's outcome becomes the reply.
    """

    usage: str
    help: str
    pattern: str | re.Pattern
    handler: Handler
    sample: str | Sequence[str] = ""
    tags: Sequence[str] = ()
    job: bool = False


@dataclass
class Route:
    """A registered command."""

    name: str
    plugin: str
    usage: str
    help: str
    sample: str
    pattern: re.Pattern
    tags: frozenset[str]
    handler: Handler
    job: bool = False
    enabled: bool = True

    def info(self) -> RouteInfo:
        return RouteInfo(name=self.name, usage=self.usage, help=self.help, sample=self.sample)


@dataclass(frozen=True)
class RouteInfo:
    """Public metadata of a route, as used for help and server registration."""

    name: str
    usage: str
    help: str
    sample: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "usage": self.usage, "help": self.help, "sample": self.sample}


class Router:
    """Owns the route table and turns command text into handler calls."""

    def __init__(self, jobs: JobEngine | None = None):
        self.jobs = jobs
        self._routes: list[Route] = []
        self._names: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def routes(self) -> list[Route]:
        return list(self._routes)

    def register(self, name: str, spec: RouteSpec, plugin: str = "") -> Route:
        """Add a route. Raises RouteError on a duplicate name or missing field."""
        name = name.strip()
        if (plugin, name) in self._names:
            logger.debug("route name has been used. [plugin:%s] [route:%s]", plugin, name)
            raise RouteError(f"route name has been used: {name}")

        if not name or not spec or not spec.usage or not spec.help or not spec.pattern:
            raise RouteError(f"missing required field in route: {name or '<unnamed>'}")
        if spec.job and self.jobs is None:
            raise RouteError(f"route {name} needs a job engine")

        pattern = spec.pattern
        if isinstance(pattern, str):
            pattern = re.compile(pattern, re.IGNORECASE)

        sample = spec.sample
        if not isinstance(sample, str):
            sample = "\n".join(sample)

        route = Route(
            name=name,
            plugin=plugin,
            usage=spec.usage,
            help=spec.help,
            sample=sample or "",
            pattern=pattern,
            tags=frozenset(name.split()) | frozenset(spec.tags),
            handler=spec.handler,
            job=spec.job,
        )
        self._routes.append(route)
        self._names.add((plugin, name))
        return route

    def match(self, text: str) -> tuple[Route, tuple[str | None, ...]] | None:
        for route in self._routes:
            if not route.enabled:
                continue
            found = route.pattern.search(text)
            if found:
                return route, found.groups()
        return None

    def dispatch(
        self,
        text: str,
        reply: Reply | None = None,
        job_id: str | None = None,
        job_hash: str | None = None,
        to: str = "",
    ) -> bool:
        """Route one command. Returns False when nothing matched.

        Every call ends in exactly one reply: from the handler, from the
        handler's job, or an error reply produced here.
        """
        message = Message(text, reply)
        matched = self.match(text)

        if matched is None:
            err = RouteNotFoundError(text)
            logger.info("%s", err)
            message.error(str(err))
            return False

        route, captures = matched
        logger.debug("dispatching cmd... [route:%s] [cmd:%s]", route.name, text)
        message.route = route.name
        message.captures = captures

        if route.job:
            message.job = self.jobs.create(job_id, job_hash, to=to, done=_reply_with_result(message))

        try:
            result = route.handler(message)
        except Exception as e:
            self._handler_failed(route, message, e)
            return True

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._handler_finished(route, message, t))
        else:
            self._ensure_answered(route, message)
        return True

    def find_routes(self, tag: str | None = None) -> list[RouteInfo]:
        """Metadata of enabled routes tagged ``tag``, or of all enabled routes."""
        return [
            route.info()
            for route in self._routes
            if route.enabled and (not tag or tag in route.tags)
        ]

    def plugin_routes(self, plugin: str) -> list[Route]:
        return [route for route in self._routes if route.plugin == plugin]

    def set_plugin_enabled(self, plugin: str, enabled: bool) -> list[Route]:
        """Enable or disable every route of a plugin. Returns the routes that changed."""
        changed = []
        for route in self.plugin_routes(plugin):
            if route.enabled != enabled:
                route.enabled = enabled
                changed.append(route)
        return changed

    def _handler_finished(self, route: Route, message: Message, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            message.error(f"command cancelled: {message.text}")
            return
        exc = task.exception()
        if exc is not None:
            self._handler_failed(route, message, exc)
            return
        self._ensure_answered(route, message)

    @staticmethod
    def _handler_failed(route: Route, message: Message, exc: BaseException) -> None:
        err = HandlerError(f"handler {route.name} failed: {exc}")
        logger.error("%s", err, exc_info=exc)
        if message.job is not None and message.job.started:
            message.job.skip().stop()
        message.error(str(err))

    @staticmethod
    def _ensure_answered(route: Route, message: Message) -> None:
        if message.done or (message.job is not None and message.job.started):
            return
        logger.warning("handler %s returned without replying to %r", route.name, message.text)
        message.error(f"no reply from {route.name}")


def _reply_with_result(message: Message) -> Callable[[ProcessError | None, Job], None]:
    def done(error: ProcessError | None, job: Job) -> None:
        text = format_result(error, job)
        if error is None:
            message.send(text)
        else:
            message.error(text)

    return done
