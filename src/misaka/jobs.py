"""Job execution engine: sequential subprocess pipelines.

A Job runs its steps one after another, buffering everything they print:
- stdout goes to ``output``
- stderr goes to ``output`` and ``errors``

The first failing step ends the pipeline. The ``action`` hook sees every
terminal outcome and may enqueue a fresh batch of steps, which restarts the
job (probe a tool, then branch on the result). ``done`` fires exactly once.

Watchers get the job whenever output changes, at most once per
``watcher_delay`` seconds. The engine owns the registry of live jobs, keyed by
jobId, that job-control requests from last order look jobs up in.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import secrets
import shlex
import signal
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from misaka.errors import ProcessError

logger = logging.getLogger(__name__)

# Delaying watchers lets them see more output per call and keeps traffic low.
WATCHER_DELAY = 0.5
READ_CHUNK = 4096
SHELL = ["/usr/bin/env", "sh", "-c"]

JOB_ACTIONS = ("status", "watch", "unwatch", "stop")

JobHook = Callable[[ProcessError | None, "Job"], Any]
Watcher = Callable[["Job"], Any]
Reporter = Callable[[str, str, str, str], Any]


@dataclass
class Step:
    """One subprocess invocation in a job's queue."""

    argv: list[str]
    options: dict[str, Any] = field(default_factory=dict)
    callback: JobHook | None = None
    process: asyncio.subprocess.Process | None = None


def _flatten(items) -> list[str]:
    argv: list[str] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            argv.extend(_flatten(item))
        else:
            argv.append(str(item))
    return argv


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def fence(text: str) -> str:
    """Wrap text in a chat code block."""
    return "```\n" + text.rstrip("\n") + "\n```"


def format_result(error: ProcessError | None, job: Job) -> str:
    """Turn a finished job into the reply text for its command."""
    if error is None:
        if job.output.strip():
            return fence(job.output)
        return "command finished with no output"

    lines = [f"command failed: {error.describe()}"]
    if job.output.strip():
        lines.append(fence(job.output))
    if job.errors.strip() and job.errors not in job.output:
        lines.append("stderr:")
        lines.append(fence(job.errors))
    return "\n".join(lines)


class Job:
    """A sequential subprocess pipeline tracked by jobId/jobHash."""

    def __init__(
        self,
        engine: JobEngine,
        job_id: str,
        job_hash: str = "",
        to: str = "",
        done: JobHook | None = None,
    ):
        self.engine = engine
        self.job_id = job_id
        self.job_hash = job_hash
        self.to = to
        self.output = ""
        self.errors = ""

        self._queue: list[Step] = []
        self._running: Step | None = None
        self._stop_requested = False
        self._scheduled = False
        self._task: asyncio.Task | None = None
        self._started = False
        self._done = False

        self._notifying = False
        self._watchers: list[Watcher] = []

        self._action: JobHook | None = None
        self._done_callback = done

    @property
    def done(self) -> bool:
        return self._done

    @property
    def started(self) -> bool:
        """Whether any step was ever queued."""
        return self._started

    @property
    def pending(self) -> int:
        return len(self._queue)

    def exec(self, step, options: dict[str, Any] | JobHook | None = None, callback: JobHook | None = None) -> Job:
        """Queue a step.

        ``step`` is either a command line run through ``sh -c`` or an argument
        vector (nested lists are flattened). ``options`` are passed to
        ``asyncio.create_subprocess_exec``; ``callback(err, job)`` fires when
        this step ends.
        """
        if self._done:
            return self

        if callable(options) and callback is None:
            callback, options = options, None

        if isinstance(step, (list, tuple)):
            argv = _flatten(step)
        else:
            argv = [*SHELL, str(step)]
        if not argv:
            raise ValueError("empty command")

        self._started = True
        self.engine._register(self)
        self._queue.append(Step(argv=argv, options=dict(options or {}), callback=callback))
        self._schedule()
        return self

    def stop(self) -> Job:
        """Send SIGTERM to the running step, if any. Does not wait for it to exit."""
        if self._done or self._running is None:
            return self

        self._stop_requested = True
        process = self._running.process
        if process is None:
            # Still spawning; terminated as soon as it exists.
            return self
        logger.info("terminating job %s step: %s", self.job_id, shlex.join(self._running.argv))
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        return self

    def skip(self, count: int | None = None) -> Job:
        """Drop ``count`` pending steps, or all of them when count is missing or non-positive."""
        if count and count > 0:
            self._queue = self._queue[count:]
        else:
            self._queue = []
        return self

    def action(self, hook: JobHook | None) -> Job:
        """Set the hook called with ``(err, job)`` whenever the queue ends.

        Steps queued from inside the hook restart the job.
        """
        self._action = hook
        return self

    def add_watcher(self, watcher: Watcher) -> Job:
        if watcher is not None and watcher not in self._watchers:
            self._watchers.append(watcher)
        return self

    def remove_watcher(self, watcher: Watcher) -> Job:
        try:
            self._watchers.remove(watcher)
        except ValueError:
            pass
        return self

    def current(self) -> str:
        """Shell-quoted command line of the running step, or ''."""
        if self._running is None:
            return ""
        return shlex.join(self._running.argv)

    def _schedule(self) -> None:
        if self._scheduled or self._done:
            return
        self._scheduled = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            error: ProcessError | None = None
            while self._queue:
                step = self._queue.pop(0)
                try:
                    error = await self._run_step(step)
                except Exception as e:
                    logger.exception("job %s step crashed", self.job_id)
                    self._running = None
                    error = ProcessError(f"cannot execute {shlex.join(step.argv)}: {e}", code=-1)
                self._call_hook("step callback", step.callback, error)
                if error is not None:
                    self.skip()
                    break

            self._call_hook("action", self._action, error)
            if not self._queue:
                break

        self._scheduled = False
        self._finish(error)

    async def _run_step(self, step: Step) -> ProcessError | None:
        self._running = step
        self._stop_requested = False
        command = shlex.join(step.argv)
        logger.debug("job %s running: %s", self.job_id, command)

        try:
            process = await asyncio.create_subprocess_exec(
                *step.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **step.options,
            )
        except (OSError, ValueError) as e:
            logger.debug("cannot execute %s: %s", command, e)
            self._running = None
            return ProcessError(f"cannot execute {command}: {e}", code=-1)

        step.process = process
        if self._stop_requested:
            self.stop()
        await asyncio.gather(
            self._pump(process.stdout, is_stderr=False),
            self._pump(process.stderr, is_stderr=True),
        )
        returncode = await process.wait()
        self._running = None
        logger.debug("job %s step done: %s [code:%s]", self.job_id, command, returncode)

        if returncode == 0:
            return None
        if returncode < 0:
            name = _signal_name(-returncode)
            return ProcessError(f"{command} killed by {name}", code=None, signal=name)
        return ProcessError(f"{command} exited with code {returncode}", code=returncode)

    async def _pump(self, stream: asyncio.StreamReader, is_stderr: bool) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self.output += text
                if is_stderr:
                    self.errors += text
                self._notify_watchers()
            if not chunk:
                return

    def _notify_watchers(self) -> None:
        if not self._watchers or self._notifying:
            return
        self._notifying = True
        asyncio.get_running_loop().call_later(self.engine.watcher_delay, self._fire_watchers)

    def _fire_watchers(self) -> None:
        self._notifying = False
        for watcher in list(self._watchers):
            try:
                watcher(self)
            except Exception:
                logger.exception("job %s watcher failed", self.job_id)

    def _call_hook(self, label: str, hook: JobHook | None, error: ProcessError | None) -> None:
        if hook is None:
            return
        try:
            hook(error, self)
        except Exception:
            logger.exception("job %s %s failed", self.job_id, label)

    def _finish(self, error: ProcessError | None) -> None:
        self._done = True
        self._running = None
        self.engine._unregister(self)
        if error is not None:
            logger.info("job %s failed: %s", self.job_id, error.describe())
        else:
            logger.debug("job %s finished", self.job_id)
        self._call_hook("done", self._done_callback, error)

    def __repr__(self) -> str:
        return f"Job(job_id={self.job_id!r}, pending={len(self._queue)}, done={self._done})"


class JobEngine:
    """Creates jobs, tracks the live ones, and answers job-control requests."""

    def __init__(self, watcher_delay: float = WATCHER_DELAY):
        self.watcher_delay = watcher_delay
        self._jobs: dict[str, Job] = {}
        self._control_watchers: dict[str, Watcher] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def create(
        self,
        job_id: str | None = None,
        job_hash: str | None = None,
        to: str = "",
        done: JobHook | None = None,
    ) -> Job:
        """Build a job. It joins the registry on its first ``exec``."""
        return Job(
            self,
            job_id or uuid.uuid4().hex,
            job_hash if job_hash is not None else secrets.token_hex(8),
            to=to or "",
            done=done,
        )

    def find(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def stop_all(self) -> None:
        for job in list(self._jobs.values()):
            job.skip().stop()

    def control(self, action: str, job_id: str, job_hash: str, report: Reporter) -> None:
        """Handle a ``job`` event from last order.

        ``report(job_id, job_hash, to, text)`` sends notices back. A jobHash
        that does not match means the controller lost track of this job, so
        the orphan is stopped.
        """
        job = self.find(job_id)
        if job is None:
            report(job_id, job_hash, "", f"job {job_id} is not running")
            return

        if job.job_hash != job_hash:
            logger.warning("job %s hash mismatch, stopping orphaned job", job_id)
            job.skip().stop()
            report(job_id, job_hash, job.to, f"job {job_id} hash mismatch, stopping the orphaned job")
            return

        if action == "status":
            report(job_id, job_hash, job.to, self._status_text(job))
        elif action == "watch":
            if job_id not in self._control_watchers:
                watcher = self._make_watcher(report)
                self._control_watchers[job_id] = watcher
                job.add_watcher(watcher)
        elif action == "unwatch":
            watcher = self._control_watchers.pop(job_id, None)
            if watcher is not None:
                job.remove_watcher(watcher)
        elif action == "stop":
            job.skip().stop()
            report(job_id, job_hash, job.to, f"stopping job {job_id}")
        else:
            logger.warning("unknown job action %r for job %s", action, job_id)
            report(job_id, job_hash, job.to, f"unknown job action: {action}")

    @staticmethod
    def _status_text(job: Job) -> str:
        current = job.current()
        if current:
            lines = [f"job {job.job_id} is running `{current}`"]
        else:
            lines = [f"job {job.job_id} is waiting for its next step"]
        if job.pending:
            lines[0] += f" ({job.pending} more queued)"
        if job.output.strip():
            lines.append(fence(job.output))
        return "\n".join(lines)

    @staticmethod
    def _make_watcher(report: Reporter) -> Watcher:
        def watcher(job: Job) -> None:
            if not job.output:
                return
            text, job.output = job.output, ""
            report(job.job_id, job.job_hash, job.to, fence(text))

        return watcher

    def _register(self, job: Job) -> None:
        self._jobs[job.job_id] = job

    def _unregister(self, job: Job) -> None:
        if self._jobs.get(job.job_id) is job:
            del self._jobs[job.job_id]
        self._control_watchers.pop(job.job_id, None)
