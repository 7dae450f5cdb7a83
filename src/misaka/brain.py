"""Misaka brain: a small key/value store replicated with last order.

Local writes are optimistic. ``set``/``delete`` record a patch that ``get``
sees at once and notify listeners synchronously. Patches are then shipped
to the server in batches. The server answers with its canonical value map,
which replaces the committed values wholesale. Failed or timed-out batches
are retried forever, merged with whatever was written in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from misaka.errors import SaveTimeoutError

logger = logging.getLogger(__name__)

SAVE_RETRY_INTERVAL = 5.0
SAVE_TIMEOUT = 10.0

Saver = Callable[[dict[str, dict[str, Any]]], Awaitable[dict[str, Any] | None]]
KeyListener = Callable[[str, Any], Any]
Listener = Callable[["Brain"], Any]


class Brain:
    """Committed values plus a pending-patch overlay."""

    def __init__(
        self,
        saver: Saver,
        retry_interval: float = SAVE_RETRY_INTERVAL,
        save_timeout: float = SAVE_TIMEOUT,
    ):
        self._saver = saver
        self.retry_interval = retry_interval
        self.save_timeout = save_timeout

        self._values: dict[str, Any] = {}
        self._patches: dict[str, dict[str, Any]] = {}
        self._dirty = False
        self._saving = False
        self._task: asyncio.Task | None = None

        self._key_listeners: dict[str, list[KeyListener]] = {}
        self._listeners: list[Listener] = []

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def saving(self) -> bool:
        return self._saving

    @property
    def values(self) -> dict[str, Any]:
        """Copy of the committed (server-confirmed) values."""
        return dict(self._values)

    @property
    def patches(self) -> dict[str, dict[str, Any]]:
        """Copy of the pending, not yet shipped patches."""
        return {key: dict(patch) for key, patch in self._patches.items()}

    def get(self, key: str, default: Any = None) -> Any:
        patch = self._patches.get(key)
        if patch is not None:
            if patch["action"] == "set":
                return patch["value"]
            return default
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> Brain:
        self._patches[key] = {"action": "set", "value": value}
        self._dirty = True
        self.save()
        self._emit_key(key, value)
        self._emit()
        return self

    def delete(self, key: str) -> Brain:
        self._patches[key] = {"action": "del"}
        self._dirty = True
        self.save()
        self._emit_key(key, None)
        self._emit()
        return self

    def save(self) -> Brain:
        """Ship pending patches on the next loop turn, unless a save is already running."""
        if self._saving or not self._dirty:
            return self

        self._saving = True
        self._task = asyncio.get_running_loop().create_task(self._save_patches())
        return self

    def load(self, values: dict[str, Any] | None, silent: bool = False) -> Brain:
        """Replace the committed values.

        Unless ``silent``, listeners hear about keys that changed. A key
        present in ``values`` counts as changed only when it also has a
        pending patch and its value is new or different; a key that
        disappeared counts as changed only when it has no pending patch.
        """
        values = dict(values or {})
        changes: dict[str, bool] = {}

        if not silent:
            for key, value in values.items():
                has_patch = key in self._patches
                has_value = key in self._values
                different = has_value and value != self._values[key]
                not_exist = not has_value
                changes[key] = has_patch and (different or not_exist)

            for key in self._values:
                if key in changes:
                    continue
                changes[key] = key not in self._patches

        self._values = values

        flagged = [key for key, changed in changes.items() if changed]
        for key in flagged:
            self._emit_key(key, self.get(key))
        if flagged:
            self._emit()
        return self

    def watch(self, key: str, callback: KeyListener) -> None:
        """Call ``callback(key, value)`` whenever ``key`` changes."""
        listeners = self._key_listeners.setdefault(key, [])
        if callback not in listeners:
            listeners.append(callback)

    def unwatch(self, key: str, callback: KeyListener) -> None:
        try:
            self._key_listeners.get(key, []).remove(callback)
        except ValueError:
            pass

    def add_listener(self, callback: Listener) -> None:
        """Call ``callback(brain)`` after any change."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    async def close(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def _take_patches(self) -> dict[str, dict[str, Any]]:
        patches, self._patches = self._patches, {}
        self._dirty = False

        for key, patch in patches.items():
            if patch["action"] == "set":
                self._values[key] = patch["value"]
            else:
                self._values.pop(key, None)
        return patches

    async def _save_patches(self) -> None:
        unsaved: dict[str, dict[str, Any]] | None = None

        while True:
            patches = self._take_patches()
            if unsaved:
                unsaved.update(patches)
                patches = unsaved

            try:
                values = await self._send(patches)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("fail to apply brain patches, retrying in %ss: %s", self.retry_interval, e)
                unsaved = patches
                await asyncio.sleep(self.retry_interval)
                continue
            break

        self._saving = False
        self.load(values, silent=True)

        if self._dirty:
            self.save()

    async def _send(self, patches: dict[str, dict[str, Any]]) -> dict[str, Any] | None:
        try:
            return await asyncio.wait_for(self._saver(patches), timeout=self.save_timeout)
        except asyncio.TimeoutError:
            raise SaveTimeoutError(f"brain save timed out after {self.save_timeout}s") from None

    def _emit_key(self, key: str, value: Any) -> None:
        for callback in list(self._key_listeners.get(key, ())):
            try:
                callback(key, value)
            except Exception:
                logger.exception("brain listener for %r failed", key)

    def _emit(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("brain listener failed")
