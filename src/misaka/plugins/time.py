"""Report the local time of this node."""

from datetime import datetime

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteSpec


class TimePlugin(Plugin):
    name = "time"

    def routes(self):
        return {
            "time": RouteSpec(
                usage="time",
                help="report the current time on this node",
                pattern=r"^time\s*$",
                handler=self.time,
            ),
        }

    def time(self, msg: Message) -> None:
        now = datetime.now().astimezone()
        msg.send(f"current time is {now.strftime('%Y-%m-%d %H:%M:%S %Z (%z)')}")
