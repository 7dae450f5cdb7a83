"""Plugin interface and loader.

A plugin is loaded only when the config has a ``scripts`` entry for it. Every
loaded plugin registers its routes with the router and starts enabled; last
order may later switch plugins on or off with a ``scripts`` event:

    ("set", {"ping": true, "uptime": true})   plugins not listed are disabled
    ("update", {"uptime": false})             only listed plugins change
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from misaka.config import TimingConfig

if TYPE_CHECKING:
    from misaka.brain import Brain
    from misaka.config import MisakaConfig
    from misaka.router import Route, Router, RouteSpec

logger = logging.getLogger(__name__)

Say = Callable[..., None]


def _discard(text: str, to: str = "") -> None:
    logger.info("not connected, dropping broadcast: %s", text)


@dataclass
class PluginContext:
    """What a plugin may use besides its own config."""

    router: Router
    brain: Brain | None = None
    say: Say = _discard
    status: Callable[[], dict[str, bool]] = dict
    timing: TimingConfig = field(default_factory=TimingConfig)


class Plugin:
    """Base class for built-in plugins.

    Subclasses set ``name`` and return their routes from ``routes()`` in the
    order they should be matched.
    """

    name = ""

    def __init__(self, config: dict[str, Any], context: PluginContext):
        self.config = config
        self.context = context

    def routes(self) -> dict[str, RouteSpec]:
        return {}

    def register(self, router: Router) -> list[Route]:
        return [router.register(name, spec, plugin=self.name) for name, spec in self.routes().items()]

    def on_enabled(self) -> None:
        pass

    def on_disabled(self) -> None:
        pass


def builtin_plugins() -> dict[str, type[Plugin]]:
    """Every plugin shipped with misaka, by name."""
    from misaka.plugins.facter import FacterPlugin
    from misaka.plugins.help import HelpPlugin
    from misaka.plugins.ping import PingPlugin
    from misaka.plugins.puppet import PuppetPlugin
    from misaka.plugins.sample import SamplePlugin
    from misaka.plugins.scripts import ScriptsPlugin
    from misaka.plugins.time import TimePlugin
    from misaka.plugins.uptime import UptimePlugin
    from misaka.plugins.warn_log import WarnLogPlugin

    plugins = [
        FacterPlugin,
        HelpPlugin,
        PingPlugin,
        PuppetPlugin,
        SamplePlugin,
        ScriptsPlugin,
        TimePlugin,
        UptimePlugin,
        WarnLogPlugin,
    ]
    return {plugin.name: plugin for plugin in plugins}


class PluginManager:
    """Loads configured plugins and tracks which of them are enabled."""

    def __init__(
        self,
        config: MisakaConfig,
        router: Router,
        brain: Brain | None = None,
        say: Say | None = None,
        available: dict[str, type[Plugin]] | None = None,
    ):
        self.config = config
        self.router = router
        self.available = available if available is not None else builtin_plugins()
        self.context = PluginContext(
            router=router,
            brain=brain,
            say=say or _discard,
            status=self.status,
            timing=config.timing,
        )
        self._plugins: dict[str, Plugin] = {}
        self._enabled: dict[str, bool] = {}
        self._started = False

    @property
    def plugins(self) -> dict[str, Plugin]:
        return dict(self._plugins)

    def load(self) -> list[Route]:
        """Instantiate configured plugins in alphabetical order and register their routes.

        A plugin that fails to load is logged and skipped.
        """
        routes: list[Route] = []
        for name in self.config.script_names():
            if name in self._plugins:
                continue
            plugin_cls = self.available.get(name)
            if plugin_cls is None:
                logger.warning("unknown plugin %s, skipping", name)
                continue

            try:
                plugin = plugin_cls(self.config.scripts.get(name) or {}, self.context)
                registered = plugin.register(self.router)
            except Exception as e:
                logger.error(f"Failed to load plugin {name}: {e}")
                self.router.set_plugin_enabled(name, False)
                continue

            self._plugins[name] = plugin
            self._enabled[name] = True
            routes.extend(registered)
            logger.info("plugin %s loaded (%d routes)", name, len(registered))
        return routes

    def is_enabled(self, name: str) -> bool:
        return self._enabled.get(name, False)

    def status(self) -> dict[str, bool]:
        """Enabled state of every known plugin, loaded or not."""
        names = sorted(set(self.available) | set(self._plugins))
        return {name: self.is_enabled(name) for name in names}

    def start(self) -> None:
        """Run ``on_enabled`` for enabled plugins. Needs a running event loop."""
        self._started = True
        for name, plugin in self._plugins.items():
            if self._enabled[name]:
                self._call(plugin, "on_enabled")

    def stop(self) -> None:
        for name, plugin in self._plugins.items():
            if self._enabled[name]:
                self._call(plugin, "on_disabled")
        self._started = False

    def apply(self, action: str, states: dict[str, Any]) -> list[Route]:
        """Handle a ``scripts`` event. Returns the routes that became enabled."""
        if action == "set":
            wanted = {name: bool(states.get(name)) for name in self._plugins}
        elif action == "update":
            wanted = {name: bool(value) for name, value in states.items() if name in self._plugins}
        else:
            logger.warning("unknown scripts action: %s", action)
            return []

        enabled: list[Route] = []
        for name, value in wanted.items():
            enabled.extend(self.set_enabled(name, value))
        return enabled

    def set_enabled(self, name: str, enabled: bool) -> list[Route]:
        """Switch one loaded plugin. Returns the routes that became enabled."""
        plugin = self._plugins.get(name)
        if plugin is None or self._enabled[name] == enabled:
            return []

        self._enabled[name] = enabled
        changed = self.router.set_plugin_enabled(name, enabled)
        logger.info("plugin %s %s", name, "enabled" if enabled else "disabled")
        if self._started:
            self._call(plugin, "on_enabled" if enabled else "on_disabled")
        return changed if enabled else []

    @staticmethod
    def _call(plugin: Plugin, hook: str) -> None:
        try:
            getattr(plugin, hook)()
        except Exception:
            logger.exception("plugin %s %s failed", plugin.name, hook)
