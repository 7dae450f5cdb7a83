"""Ping: PONG!"""

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteSpec


class PingPlugin(Plugin):
    name = "ping"

    def routes(self):
        return {
            "ping": RouteSpec(
                usage="ping",
                help="check whether misaka is online",
                pattern=r"^ping\s*$",
                handler=self.ping,
            ),
            "ping text": RouteSpec(
                usage="ping <text>",
                help="check whether misaka is online and have her repeat some text",
                sample=[
                    "Give any <text> and misaka answers with it.",
                    "For example:",
                    "`$0 ping misaka`",
                ],
                pattern=r"^ping\s+(.*)",
                handler=self.ping_text,
            ),
        }

    def ping(self, msg: Message) -> None:
        msg.send("PONG")

    def ping_text(self, msg: Message) -> None:
        msg.send(f"PONG {msg.captures[0]}")
