"""Show how long the host has been up."""

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteSpec


class UptimePlugin(Plugin):
    name = "uptime"

    def routes(self):
        return {
            "uptime": RouteSpec(
                usage="uptime",
                help="show how long this node has been running",
                pattern=r"^uptime\s*$",
                handler=self.uptime,
                job=True,
            ),
        }

    def uptime(self, msg: Message) -> None:
        msg.job.exec("uptime")
