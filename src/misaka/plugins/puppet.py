"""Run ``run-puppet`` on this node."""

from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteSpec

RUN_PUPPET = ["/usr/bin/env", "run-puppet"]


class PuppetPlugin(Plugin):
    name = "puppet"

    def routes(self):
        return {
            "puppet": RouteSpec(
                usage="puppet <category...>",
                help="run run-puppet, see `$0 puppet help` for every supported argument",
                pattern=r"^puppet\s*(.*)$",
                handler=self.puppet,
                job=True,
            ),
        }

    def puppet(self, msg: Message) -> None:
        args = (msg.captures[0] or "").split() or ["help"]
        msg.job.exec([RUN_PUPPET, args])
