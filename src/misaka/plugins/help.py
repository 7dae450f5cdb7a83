"""List available commands."""

from __future__ import annotations

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteInfo, RouteSpec

NOT_FOUND = "no matching command found"
# Asks the chat side to substitute ``$0`` with the nick misaka answers to.
REPLACE_NICK = {"replace$0": True}


def format_help(routes: list[RouteInfo]) -> str:
    """One aligned ``$0 usage`` line per route; ``$0`` is replaced by the caller's nick."""
    if not routes:
        return NOT_FOUND

    width = max(len(route.usage) for route in routes)
    return "\n".join(f"`$0 {route.usage.ljust(width)}` - {route.help}" for route in routes)


class HelpPlugin(Plugin):
    name = "help"

    def routes(self):
        return {
            "help": RouteSpec(
                usage="help",
                help="list the commands misaka supports",
                pattern=r"^help\s*$",
                handler=self.help,
            ),
            "help cmd": RouteSpec(
                usage="help <cmd>",
                help="show help of a command",
                pattern=r"^help\s+(.+)$",
                handler=self.help_cmd,
            ),
        }

    def help(self, msg: Message) -> None:
        msg.send(format_help(self.context.router.find_routes()), **REPLACE_NICK)

    def help_cmd(self, msg: Message) -> None:
        tag = msg.captures[0].strip()
        msg.send(format_help(self.context.router.find_routes(tag)), **REPLACE_NICK)
