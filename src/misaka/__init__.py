"""Misaka: remote command agent driven by last order."""

__version__ = "0.1.0"

from misaka.brain import Brain
from misaka.config import MisakaConfig, TimingConfig
from misaka.errors import (
    ConfigError,
    HandlerError,
    MisakaError,
    ProcessError,
    RouteError,
    RouteNotFoundError,
    SaveTimeoutError,
    TransportError,
)
from misaka.jobs import Job, JobEngine
from misaka.message import Message
from misaka.router import Route, RouteInfo, Router, RouteSpec
from misaka.session import Session, sign

__all__ = [
    "Brain",
    "MisakaConfig",
    "TimingConfig",
    "ConfigError",
    "HandlerError",
    "MisakaError",
    "ProcessError",
    "RouteError",
    "RouteNotFoundError",
    "SaveTimeoutError",
    "TransportError",
    "Job",
    "JobEngine",
    "Message",
    "Route",
    "RouteInfo",
    "Router",
    "RouteSpec",
    "Session",
    "sign",
]
