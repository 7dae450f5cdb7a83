"""List every plugin with its enabled state."""

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteSpec


class ScriptsPlugin(Plugin):
    name = "scripts"

    def routes(self):
        return {
            "scripts": RouteSpec(
                usage="scripts",
                help="list every plugin and whether it is enabled",
                pattern=r"^scripts\s*$",
                handler=self.scripts,
            ),
        }

    def scripts(self, msg: Message) -> None:
        lines = [
            f"{'✔ enabled' if enabled else '✘ disabled'}: `{name}`"
            for name, enabled in self.context.status().items()
        ]
        msg.send("\n".join(lines))
