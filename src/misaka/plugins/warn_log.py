"""Watch warning logs and broadcast anything new to everyone.

Plugin config:
    {"logs": ["/var/log/app/warn.log"]}

The watched list is kept in the brain under ``warn_log`` so changes made from
chat survive restarts. Scanning runs while the plugin is enabled.
"""

from __future__ import annotations

import logging

from misaka.jobs import fence
from misaka.log_scanner import LogScanner
from misaka.message import Message
from misaka.plugins import Plugin, PluginContext
from misaka.router import RouteSpec

logger = logging.getLogger(__name__)

BRAIN_KEY = "warn_log"


def _list_logs(logs: list[str]) -> list[str]:
    if not logs:
        return ["(none)"]
    return [f"* {log}" for log in logs]


class WarnLogPlugin(Plugin):
    name = "warn_log"

    def __init__(self, config, context: PluginContext):
        super().__init__(config, context)
        self.scanner = LogScanner(
            config.get("logs") or [],
            callback=self.on_logs,
            poll_interval=context.timing.log_scan_interval,
        )
        if context.brain is not None:
            self.scanner.bind_brain(context.brain, BRAIN_KEY)

    def routes(self):
        return {
            "warn log switch": RouteSpec(
                usage="warn log [on|off]",
                help="start or stop watching warning logs, on by default",
                pattern=r"^warn\s+log\s+(on|off|start|stop|pause)\s*$",
                handler=self.switch,
            ),
            "warn log add": RouteSpec(
                usage="warn log add <file...>",
                help="add files to the watch list",
                pattern=r"^warn\s+log\s+add\s*(.*)",
                handler=self.add,
            ),
            "warn log remove": RouteSpec(
                usage="warn log remove <file...>",
                help="remove files from the watch list",
                pattern=r"^warn\s+log\s+remove\s*(.*)",
                handler=self.remove,
            ),
            "warn log status": RouteSpec(
                usage="warn log status",
                help="show whether logs are watched and which ones",
                pattern=r"^warn\s+log(\s+status)?\s*$",
                handler=self.status,
            ),
        }

    def on_enabled(self) -> None:
        self.scanner.start()

    def on_disabled(self) -> None:
        self.scanner.stop()

    def on_logs(self, files: dict[str, str], scanner: LogScanner) -> None:
        blocks = [f"* log file: {log}\n{fence(content)}" for log, content in files.items() if content]
        if not blocks:
            return
        self.context.say("new warnings found in the logs!\n" + "\n\n".join(blocks))

    def switch(self, msg: Message) -> None:
        action = msg.captures[0].lower()
        if action in ("on", "start"):
            self.scanner.start()
            msg.send("log watching started")
        else:
            self.scanner.stop()
            msg.send("log watching stopped")

    def add(self, msg: Message) -> None:
        wrong = []
        for path in (msg.captures[0] or "").split():
            if not path.startswith("/"):
                wrong.append(path)
                continue
            self.scanner.add_log(path)

        lines = []
        if wrong:
            lines.append("files to watch must be absolute paths, these were ignored:")
            lines.extend(f"* {path}" for path in wrong)
            lines.append("")
        lines.append("watched logs:")
        lines.extend(_list_logs(self.scanner.logs))
        msg.send("\n".join(lines))

    def remove(self, msg: Message) -> None:
        for path in (msg.captures[0] or "").split():
            self.scanner.remove_log(path)

        msg.send("\n".join(["watched logs:", *_list_logs(self.scanner.logs)]))

    def status(self, msg: Message) -> None:
        if not self.scanner.started:
            msg.send("warning logs are not being watched")
            return
        msg.send("\n".join(["watching logs:", *_list_logs(self.scanner.logs)]))
