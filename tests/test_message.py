"""Tests for misaka.message — one-shot replies."""

from misaka.message import Message


class TestMessage:
    """Test at-most-once reply delivery."""

    def test_send(self, replies):
        msg = Message("ping", replies)
        msg.send("PONG")
        assert replies == [{"text": "PONG"}]
        assert msg.done is True

    def test_error(self, replies):
        msg = Message("ping", replies)
        msg.error("boom")
        assert replies == [{"error": True, "text": "boom"}]

    def test_only_first_reply_is_delivered(self, replies):
        msg = Message("ping", replies)
        msg.send("first")
        msg.error("second")
        msg.send("third")
        assert replies == [{"text": "first"}]

    def test_options_are_attached(self, replies):
        msg = Message("help", replies)
        msg.send("`$0 help`", **{"replace$0": True})
        assert replies == [{"text": "`$0 help`", "options": {"replace$0": True}}]

    def test_no_reply_channel(self):
        msg = Message("ping")
        msg.send("PONG")
        assert msg.done is True

    def test_initial_state(self):
        msg = Message("ping")
        assert msg.done is False
        assert msg.captures == ()
        assert msg.job is None
