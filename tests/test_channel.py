"""Tests for toolbelt/channel.py."""

from __future__ import annotations

from toolbelt.channel import Channel


class TestChannel:
    def test_publish_reaches_all_subscribers(self):
        ch = Channel("t")
        a, b = [], []
        ch.subscribe(a.append)
        ch.subscribe(b.append)
        assert ch.publish(1) == 2
        assert a == [1] and b == [1]

    def test_cancel_stops_delivery(self):
        ch = Channel("t")
        got = []
        sub = ch.subscribe(got.append)
        sub.cancel()
        assert sub.active is False
        assert ch.publish("x") == 0
        assert got == []
        assert ch.subscriber_count() == 0

    def test_context_manager_cancels(self):
        ch = Channel("t")
        got = []
        with ch.subscribe(got.append):
            ch.publish(1)
        ch.publish(2)
        assert got == [1]

    def test_raising_subscriber_is_isolated(self, caplog):
        ch = Channel("t")
        got = []

        def boom(event):
            raise RuntimeError("bad subscriber")

        ch.subscribe(boom)
        ch.subscribe(got.append)
        assert ch.publish("e") == 1
        assert got == ["e"]
        assert "bad subscriber" in caplog.text

    def test_clear(self):
        ch = Channel("t")
        sub = ch.subscribe(lambda e: None)
        ch.clear()
        assert sub.active is False
        assert ch.subscriber_count() == 0
