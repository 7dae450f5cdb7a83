"""Query facts about this node with facter."""

import logging

from misaka import facter
from misaka.message import Message
from misaka.plugins import Plugin
from misaka.router import RouteSpec

logger = logging.getLogger(__name__)


class FacterPlugin(Plugin):
    name = "facter"

    def routes(self):
        return {
            "facter": RouteSpec(
                usage="facter <facts...>",
                help="query any facter fact",
                sample=[
                    "Give any number of fact names and misaka looks them up with facter.",
                    "For example:",
                    "`$0 facter ipaddress memoryfree`",
                ],
                pattern=r"^facter\s+(.*)",
                handler=self.facter,
            ),
        }

    async def facter(self, msg: Message) -> None:
        keys = (msg.captures[0] or "").split()
        if not keys:
            msg.send("give at least one fact name")
            return

        try:
            facts = await facter.query(keys)
        except facter.FacterError as e:
            logger.debug("cannot read from facter. [fact:%s] [err:%s]", " ".join(keys), e)
            msg.error(f"cannot read from facter: {e}")
            return

        lines = ["facts found:", "```"]
        lines.extend(f"{key} => {value}" for key, value in facts.items())
        lines.append("```")
        msg.send("\n".join(lines))
