"""Incremental log reader.

Polls a set of files with ``stat`` and reads whatever was appended since the
last scan, keeping a byte offset per file. A file that shrank is assumed to
have been truncated or rotated and is read again from the start. New text is
handed to ``callback(files, scanner)`` as ``{path: text}``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable

if TYPE_CHECKING:
    from misaka.brain import Brain

logger = logging.getLogger(__name__)

POLLING_INTERVAL = 10.0
MAX_FILE_READ_SIZE = 256 * 1024

ScanCallback = Callable[[dict[str, str], "LogScanner"], Any]


@dataclass
class LogState:
    size: int = -1
    mtime: float = 0.0
    offset: int = 0


class LogScanner:
    """Watches any number of files for appended content."""

    def __init__(
        self,
        logs: Iterable[str],
        callback: ScanCallback | None = None,
        poll_interval: float = POLLING_INTERVAL,
    ):
        self._callback = callback
        self.poll_interval = poll_interval
        self._stats: dict[str, LogState] = {}
        self._task: asyncio.Task | None = None
        self._brain: Brain | None = None
        self._brain_key = ""
        self._logs: list[str] = []
        for log in logs:
            self.add_log(log)

    @property
    def logs(self) -> list[str]:
        """Watched files. When bound to the brain, its copy wins."""
        if self._brain is not None:
            stored = self._brain.get(self._brain_key)
            if isinstance(stored, list):
                return list(dict.fromkeys(str(log) for log in stored if log))
        return list(self._logs)

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def bind_brain(self, brain: Brain, key: str) -> LogScanner:
        """Keep the watched file list in the brain under ``key``.

        Whatever list the brain holds (now or after a later sync) replaces
        the locally configured one.
        """
        self._brain = brain
        self._brain_key = key
        return self

    def add_log(self, log: str) -> LogScanner:
        logs = self.logs
        if log and log not in logs:
            logs.append(log)
            self._persist(logs)
        return self

    def remove_log(self, log: str) -> LogScanner:
        logs = self.logs
        if log in logs:
            logs.remove(log)
            self._stats.pop(log, None)
            self._persist(logs)
        return self

    def start(self) -> LogScanner:
        if self.started:
            return self
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info("log scanner started (%d files)", len(self.logs))
        return self

    def stop(self) -> LogScanner:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("log scanner stopped")
        return self

    async def scan_once(self) -> dict[str, str]:
        """Read new content of every changed file and notify the callback."""
        changed = self._changed_logs()
        if not changed:
            return {}

        logger.debug("logs changed: %s", ", ".join(changed))
        files = self._read_changes(changed)
        if files and self._callback:
            try:
                self._callback(files, self)
            except Exception:
                logger.exception("log scanner callback failed")
        return files

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.scan_once()
            except Exception as e:
                logger.error(f"Log scanner error: {e}")

    def _changed_logs(self) -> list[str]:
        changed = []
        for log in self.logs:
            try:
                st = os.stat(log)
            except OSError as e:
                logger.debug("cannot stat log file. [log:%s] [err:%s]", log, e)
                continue

            if not os.path.isfile(log):
                continue

            prev = self._stats.get(log) or LogState()
            if prev.size == st.st_size and prev.mtime == st.st_mtime:
                continue

            offset = prev.offset
            if offset > st.st_size:
                offset = 0

            self._stats[log] = LogState(size=st.st_size, mtime=st.st_mtime, offset=offset)
            if st.st_size > offset:
                changed.append(log)
        return changed

    def _read_changes(self, logs: list[str]) -> dict[str, str]:
        files: dict[str, str] = {}
        for log in logs:
            state = self._stats.get(log)
            if state is None:
                continue
            try:
                with open(log, "rb") as f:
                    f.seek(state.offset)
                    chunks = []
                    while True:
                        data = f.read(MAX_FILE_READ_SIZE)
                        if not data:
                            break
                        state.offset += len(data)
                        chunks.append(data)
            except OSError as e:
                logger.debug("fail to read log file. [log:%s] [err:%s]", log, e)
                continue
            files[log] = b"".join(chunks).decode("utf-8", errors="replace")
        return files

    def _persist(self, logs: list[str]) -> None:
        self._logs = logs
        if self._brain is not None:
            self._brain.set(self._brain_key, list(logs))
