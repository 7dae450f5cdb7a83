"""Print detailed usage of a command."""

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.plugins.help import NOT_FOUND, REPLACE_NICK
from misaka.router import RouteSpec


class SamplePlugin(Plugin):
    name = "sample"

    def routes(self):
        return {
            "sample": RouteSpec(
                usage="sample <cmd>",
                help="show detailed help of a command",
                pattern=r"^sample\s+(.+)$",
                handler=self.sample,
            ),
        }

    def sample(self, msg: Message) -> None:
        routes = self.context.router.find_routes(msg.captures[0].strip())
        if not routes:
            msg.send(NOT_FOUND)
            return

        blocks = []
        for route in routes:
            blocks.append(f"command: `{route.usage}`\n{route.sample or 'no detailed usage...'}")
        msg.send("\n\n".join(blocks), **REPLACE_NICK)
