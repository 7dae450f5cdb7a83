"""Misaka configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from misaka.errors import ConfigError


def misaka_home() -> Path:
    return Path(os.environ.get("MISAKA_HOME", str(Path.home() / ".misaka")))


def config_path() -> Path:
    return misaka_home() / "config.json"


@dataclass
class TimingConfig:
    """Retry intervals and delays, in seconds."""

    login_retry_interval: float = 5.0
    save_retry_interval: float = 5.0
    save_timeout: float = 10.0
    watcher_delay: float = 0.5
    log_scan_interval: float = 10.0


@dataclass
class MisakaConfig:
    """Top-level agent configuration.

    ``scripts`` maps plugin name to that plugin's own settings. A plugin is
    loaded only when it has an entry, even an empty one.
    """

    server_url: str = ""
    shared_secret: str = ""
    node: str = ""
    namespace: str = "/misaka"
    timing: TimingConfig = field(default_factory=TimingConfig)
    scripts: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path | None = None) -> MisakaConfig:
        """Load config from disk, then apply env var overrides.

        LAST_ORDER_URL, SISTERS_SHARED_SECRET and MISAKA_NODE win over the file.
        """
        config = cls()
        path = path or config_path()
        if path.exists():
            try:
                data = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                raise ConfigError(f"invalid config file {path}: {e}") from e

            for key in ("server_url", "shared_secret", "node", "namespace"):
                if key in data:
                    setattr(config, key, str(data[key]))
            if "timing" in data:
                for k, v in data["timing"].items():
                    if not hasattr(config.timing, k):
                        raise ConfigError(f"unknown timing setting: {k}")
                    setattr(config.timing, k, float(v))
            if "scripts" in data:
                scripts = data["scripts"]
                if isinstance(scripts, list):
                    scripts = {name: {} for name in scripts}
                config.scripts = {name: dict(cfg or {}) for name, cfg in scripts.items()}

        server_url = os.environ.get("LAST_ORDER_URL")
        secret = os.environ.get("SISTERS_SHARED_SECRET")
        node = os.environ.get("MISAKA_NODE")

        if server_url:
            config.server_url = server_url
        if secret:
            config.shared_secret = secret
        if node:
            config.node = node

        return config

    def validate(self) -> None:
        """Raise ConfigError naming every missing required value."""
        missing = []
        if not self.server_url:
            missing.append("server_url (LAST_ORDER_URL)")
        if not self.shared_secret:
            missing.append("shared_secret (SISTERS_SHARED_SECRET)")
        if not self.node:
            missing.append("node (MISAKA_NODE)")
        if missing:
            raise ConfigError("missing required configuration: " + ", ".join(missing))

    def script_names(self) -> list[str]:
        """Configured plugins in load order."""
        return sorted(self.scripts)

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk. The shared secret is never written."""
        path = path or config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "server_url": self.server_url,
            "node": self.node,
            "namespace": self.namespace,
            "timing": {
                "login_retry_interval": self.timing.login_retry_interval,
                "save_retry_interval": self.timing.save_retry_interval,
                "save_timeout": self.timing.save_timeout,
                "watcher_delay": self.timing.watcher_delay,
                "log_scan_interval": self.timing.log_scan_interval,
            },
            "scripts": self.scripts,
        }
        path.write_text(json.dumps(data, indent=2))
