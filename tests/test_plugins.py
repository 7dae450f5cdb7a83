"""Tests for misaka.plugins — loading, enable state and built-in plugins."""

import asyncio

import pytest

from misaka import facter
from misaka.brain import Brain
from misaka.plugins import Plugin, PluginManager, builtin_plugins
from misaka.plugins.help import format_help
from misaka.router import RouteInfo, RouteSpec


class Recorder(Plugin):
    """Plugin that records its lifecycle hooks."""

    name = "recorder"

    def __init__(self, config, context):
        super().__init__(config, context)
        self.events = []

    def routes(self):
        return {
            "record": RouteSpec(usage="record", help="h", pattern=r"^record$", handler=lambda msg: msg.send("ok")),
        }

    def on_enabled(self):
        self.events.append("enabled")

    def on_disabled(self):
        self.events.append("disabled")


class Broken(Plugin):
    name = "broken"

    def routes(self):
        raise RuntimeError("cannot load")


async def _echo_saver(patches):
    return {key: patch["value"] for key, patch in patches.items() if patch["action"] == "set"}


@pytest.fixture
def manager(config, router):
    def build(*names, available=None, brain=None, say=None):
        config.scripts = {name: {} for name in names}
        plugins = PluginManager(config, router, brain=brain, say=say, available=available)
        plugins.load()
        return plugins

    return build


class TestPluginManager:
    """Test plugin loading and switching."""

    def test_loads_configured_plugins_in_order(self, manager, router):
        plugins = manager("time", "ping", "nonexistent")
        assert list(plugins.plugins) == ["ping", "time"]
        assert [route.name for route in router.routes] == ["ping", "ping text", "time"]

    def test_failing_plugin_is_skipped(self, manager, router):
        plugins = manager("broken", "recorder", available={"broken": Broken, "recorder": Recorder})
        assert list(plugins.plugins) == ["recorder"]
        assert plugins.is_enabled("broken") is False

    def test_status_lists_known_plugins(self, manager):
        plugins = manager("ping")
        status = plugins.status()
        assert set(status) == set(builtin_plugins())
        assert status["ping"] is True
        assert status["uptime"] is False

    def test_set_disables_absent_plugins(self, manager, router):
        plugins = manager("ping", "time")
        assert plugins.apply("set", {"ping": True}) == []
        assert plugins.is_enabled("time") is False
        assert router.match("time") is None
        assert router.match("ping") is not None

    def test_update_touches_listed_plugins_only(self, manager):
        plugins = manager("ping", "time")
        plugins.apply("update", {"time": False})
        enabled = plugins.apply("update", {"time": True, "uptime": True})
        assert [route.name for route in enabled] == ["time"]
        assert plugins.is_enabled("ping") is True

    def test_unknown_action(self, manager):
        plugins = manager("ping")
        assert plugins.apply("explode", {"ping": False}) == []
        assert plugins.is_enabled("ping") is True

    def test_hooks_follow_enable_state(self, manager):
        plugins = manager("recorder", available={"recorder": Recorder})
        recorder = plugins.plugins["recorder"]
        plugins.set_enabled("recorder", False)
        assert recorder.events == []

        plugins.start()
        assert recorder.events == []
        plugins.set_enabled("recorder", True)
        plugins.set_enabled("recorder", True)
        plugins.stop()
        assert recorder.events == ["enabled", "disabled"]


class TestHelpPlugins:
    """Test help, sample and scripts."""

    def test_format_help_aligns_usage(self):
        text = format_help([
            RouteInfo(name="ping", usage="ping", help="check"),
            RouteInfo(name="ping text", usage="ping <text>", help="echo"),
        ])
        assert text == "`$0 ping       ` - check\n`$0 ping <text>` - echo"

    def test_format_help_nothing_found(self):
        assert format_help([]) == "no matching command found"

    def test_help_by_tag(self, manager, router, replies):
        manager("help", "ping")
        router.dispatch("help text", replies)
        assert replies == [{
            "text": "`$0 ping <text>` - check whether misaka is online and have her repeat some text",
            "options": {"replace$0": True},
        }]

    def test_help_lists_everything(self, manager, router, replies):
        manager("help", "ping")
        router.dispatch("help", replies)
        assert len(replies[0]["text"].splitlines()) == 4

    def test_sample(self, manager, router, replies):
        manager("ping", "sample")
        router.dispatch("sample ping", replies)
        text = replies[0]["text"]
        assert text.startswith("command: `ping`\nno detailed usage...")
        assert "`$0 ping misaka`" in text

    def test_sample_unknown(self, manager, router, replies):
        manager("sample")
        router.dispatch("sample nothing", replies)
        assert replies == [{"text": "no matching command found"}]

    def test_scripts(self, manager, router, replies):
        manager("ping", "scripts")
        router.dispatch("scripts", replies)
        lines = replies[0]["text"].splitlines()
        assert "✔ enabled: `ping`" in lines
        assert "✘ disabled: `uptime`" in lines


class TestCommandPlugins:
    """Test plugins that run commands."""

    @pytest.mark.asyncio
    async def test_puppet_defaults_to_help(self, manager, router, jobs, replies, eventually):
        manager("puppet")
        router.dispatch("puppet", replies, job_id="p1")
        job = jobs.find("p1")
        assert job.current() == "" or "run-puppet help" in job.current()
        await eventually(lambda: replies)
        assert len(replies) == 1

    @pytest.mark.asyncio
    async def test_uptime_replies_once(self, manager, router, replies, eventually):
        manager("uptime")
        router.dispatch("uptime", replies)
        await eventually(lambda: replies)
        await asyncio.sleep(0.05)
        assert len(replies) == 1

    @pytest.mark.asyncio
    async def test_facter(self, manager, router, replies, eventually, monkeypatch):
        async def fake_query(facts):
            return {"ipaddress": "10.0.0.1", "nope": None}

        monkeypatch.setattr(facter, "query", fake_query)
        manager("facter")
        router.dispatch("facter ipaddress nope", replies)
        await eventually(lambda: replies)
        assert replies == [{"text": "facts found:\n```\nipaddress => 10.0.0.1\nnope => None\n```"}]

    @pytest.mark.asyncio
    async def test_facter_error(self, manager, router, replies, eventually, monkeypatch):
        async def fake_query(facts):
            raise facter.FacterError("facter exited with code 1")

        monkeypatch.setattr(facter, "query", fake_query)
        manager("facter")
        router.dispatch("facter ipaddress", replies)
        await eventually(lambda: replies)
        assert replies[0]["error"] is True
        assert "code 1" in replies[0]["text"]


class TestWarnLog:
    """Test the warning log watcher plugin."""

    @pytest.mark.asyncio
    async def test_add_requires_absolute_paths(self, manager, router, replies):
        brain = Brain(_echo_saver)
        manager("warn_log", brain=brain)
        router.dispatch("warn log add /var/log/a.log relative.log", replies)
        text = replies[0]["text"]
        assert "* relative.log" in text
        assert text.endswith("watched logs:\n* /var/log/a.log")
        assert brain.get("warn_log") == ["/var/log/a.log"]
        await brain.close()

    @pytest.mark.asyncio
    async def test_remove(self, manager, router, replies):
        manager("warn_log")
        router.dispatch("warn log add /a.log /b.log", replies)
        router.dispatch("warn log remove /a.log", replies)
        assert replies[1]["text"] == "watched logs:\n* /b.log"

    @pytest.mark.asyncio
    async def test_switch_and_status(self, manager, router, replies):
        plugins = manager("warn_log")
        router.dispatch("warn log status", replies)
        router.dispatch("warn log on", replies)
        router.dispatch("warn log", replies)
        router.dispatch("warn log OFF", replies)
        assert [reply["text"] for reply in replies] == [
            "warning logs are not being watched",
            "log watching started",
            "watching logs:\n(none)",
            "log watching stopped",
        ]
        assert plugins.plugins["warn_log"].scanner.started is False

    @pytest.mark.asyncio
    async def test_new_lines_are_broadcast(self, manager, tmp_path, eventually):
        log = tmp_path / "warn.log"
        said = []
        plugins = manager("warn_log", say=lambda text, to="": said.append(text))
        scanner = plugins.plugins["warn_log"].scanner
        scanner.add_log(str(log))
        log.write_text("disk almost full\n")

        plugins.start()
        await eventually(lambda: said)
        assert said[0].startswith("new warnings found in the logs!")
        assert f"* log file: {log}" in said[0]
        assert "disk almost full" in said[0]

        plugins.set_enabled("warn_log", False)
        assert scanner.started is False
