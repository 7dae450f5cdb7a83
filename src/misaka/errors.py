"""Error taxonomy for the Misaka agent."""

from __future__ import annotations


class MisakaError(Exception):
    """Base class for every error raised by the agent."""


class ConfigError(MisakaError):
    """Required configuration is missing or malformed."""


class TransportError(MisakaError):
    """Login or realtime-channel failure. Always retried, never surfaced."""


class SaveTimeoutError(MisakaError):
    """A brain save round trip exceeded its deadline."""


class RouteError(MisakaError):
    """A plugin tried to register an invalid or duplicate route."""


class RouteNotFoundError(MisakaError):
    """No enabled route matches a command."""

    def __init__(self, text: str):
        super().__init__(f"command not supported: {text}")
        self.text = text


class HandlerError(MisakaError):
    """A plugin handler or watcher raised."""


class ProcessError(MisakaError):
    """A job step exited non-zero, was killed by a signal, or failed to spawn."""

    def __init__(self, message: str, code: int | None = None, signal: str | None = None):
        super().__init__(message)
        self.code = code
        self.signal = signal

    def describe(self) -> str:
        if self.signal:
            return f"killed by signal {self.signal}"
        if self.code == -1:
            return f"failed to start ({self})"
        return f"exit code {self.code}"
