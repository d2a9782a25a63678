"""Tests for the shared consumer base, Speaker, Auditor and HistorySearch."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from hypothesis import given
from hypothesis import strategies as st

from slackrelay.config import ConsumerConfig
from slackrelay.consumers import Auditor, HistorySearch, OutputRecord, Speaker, Status
from slackrelay.consumers.base import split_channels
from slackrelay.core.constants import PLACEHOLDER_NOTICE, ConsumerState
from slackrelay.core.errors import InvalidToken, MalformedPayload, NotConnected, SearchUnavailable
from slackrelay.gateway.bus import Bus
from slackrelay.gateway.registry import ConnectionRegistry
from tests.mocks import FakeTransportFactory


class Sink:
    """Collects what a consumer reports to its host."""

    def __init__(self) -> None:
        self.outputs: list[OutputRecord] = []
        self.statuses: list[Status] = []
        self.errors: list[BaseException] = []

    def kwargs(self) -> dict:
        return {
            "on_output": self.outputs.append,
            "on_status": self.statuses.append,
            "on_error": self.errors.append,
        }


def build(cls, registry, bus, sink=None, **config):
    config.setdefault("token", "T1")
    sink = sink or Sink()
    consumer = cls(ConsumerConfig(**config), registry=registry, bus=bus, **sink.kwargs())
    return consumer, sink


class TestLifecycle:
    def test_starts_initializing(self, registry, bus):
        auditor, sink = build(Auditor, registry, bus)
        assert auditor.state is ConsumerState.INITIALIZING
        assert sink.statuses[-1] == Status("ok", "connecting")

    def test_authenticated_connects(self, registry, bus, transports):
        auditor, sink = build(Auditor, registry, bus)
        transports.latest("T1").authenticate()
        assert auditor.state is ConsumerState.CONNECTED
        assert sink.statuses[-1] == Status("ok", "connected")

    def test_disconnect_and_reconnect(self, registry, bus, transports):
        speaker, sink = build(Speaker, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        transport.drop()
        assert speaker.state is ConsumerState.DISCONNECTED
        assert speaker.status == Status("error", "disconnected")
        transport.handler.on_connection_opened()
        assert speaker.state is ConsumerState.CONNECTED
        assert speaker.status == Status("ok", "connected")

    def test_unable_to_start(self, registry, bus, transports):
        auditor, _ = build(Auditor, registry, bus)
        transports.latest("T1").handler.on_unable_to_start(RuntimeError("nope"), True)
        assert auditor.state is ConsumerState.DISCONNECTED
        assert auditor.status.level == "error"

    def test_joins_open_connection_connected(self, registry, bus, transports):
        first, _ = build(Auditor, registry, bus)
        transports.latest("T1").open()
        second, _ = build(Speaker, registry, bus)
        assert second.state is ConsumerState.CONNECTED
        assert len(transports.created) == 1
        assert first.connection is second.connection

    def test_invalid_token_fails_construction(self, registry, bus):
        with pytest.raises(InvalidToken):
            build(Auditor, registry, bus, token="  ")
        assert bus.subscriber_count() == 0

    def test_close_revokes_and_releases(self, registry, bus, transports):
        auditor, sink = build(Auditor, registry, bus)
        assert bus.subscriber_count() == len(auditor.subscriptions) > 0
        auditor.close()
        assert auditor.state is ConsumerState.CLOSED
        assert bus.subscriber_count() == 0
        assert "T1" not in registry
        assert transports.latest("T1").stopped
        assert sink.statuses[-1] == Status("error", "closed")

    def test_close_is_idempotent(self, registry, bus):
        a, _ = build(Auditor, registry, bus)
        b, _ = build(Auditor, registry, bus)
        a.close()
        a.close()
        # b still holds its reference
        assert registry.refcount("T1") == 1
        assert not b.connection.closed

    def test_close_one_of_shared_keeps_connection(self, registry, bus, transports):
        speaker, _ = build(Speaker, registry, bus)
        auditor, sink = build(Auditor, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        speaker.close()
        assert not transport.stopped
        transport.deliver({"channel": "C1", "text": "still here"})
        assert [o.payload for o in sink.outputs] == ["still here"]

    def test_closed_consumer_ignores_events(self, registry, bus, transports):
        keep, _ = build(Auditor, registry, bus)
        gone, sink = build(Auditor, registry, bus)
        gone.close()
        transports.latest("T1").deliver({"channel": "C1", "text": "x"})
        assert sink.outputs == []

    def test_repeated_create_close_does_not_leak(self, registry, bus, transports):
        for _ in range(20):
            consumer, _ = build(HistorySearch, registry, bus, query="q")
            consumer.close()
        assert bus.subscriber_count() == 0
        assert len(registry) == 0
        assert all(t.stopped for t in transports.created)

    def test_events_scoped_to_token(self, registry, bus, transports):
        one, sink_one = build(Auditor, registry, bus, token="T1")
        two, sink_two = build(Auditor, registry, bus, token="T2")
        transports.latest("T2").open()
        transports.latest("T2").deliver({"channel": "C1", "text": "for two"})
        assert sink_one.outputs == []
        assert [o.payload for o in sink_two.outputs] == ["for two"]
        assert one.state is ConsumerState.INITIALIZING

    def test_status_callback_failure_is_isolated(self, registry, bus, transports):
        def bad_status(status):
            if status.label == "connected":
                raise RuntimeError("display broke")

        auditor = Auditor(ConsumerConfig(token="T1"), registry=registry, bus=bus, on_status=bad_status)
        transports.latest("T1").open()
        assert auditor.state is ConsumerState.CONNECTED

    def test_failed_construction_gives_back_reference(self, registry, bus, transports):
        def refuse(status):
            if status.label == "connecting":
                raise RuntimeError("no display")

        with pytest.raises(RuntimeError):
            Auditor(ConsumerConfig(token="T1"), registry=registry, bus=bus, on_status=refuse)
        assert bus.subscriber_count() == 0
        assert "T1" not in registry
        assert transports.latest("T1").stopped

    def test_close_after_registry_reset_keeps_new_connection(self, registry, bus, transports):
        stale, _ = build(Auditor, registry, bus)
        registry.close_all()
        current, sink = build(Auditor, registry, bus)
        stale.close()
        assert not current.connection.closed
        assert registry.refcount("T1") == 1
        transports.latest("T1").deliver({"channel": "C1", "text": "still flowing"})
        assert [o.payload for o in sink.outputs] == ["still flowing"]


class TestChannelFilter:
    def test_split_channels(self):
        assert split_channels(None) == []
        assert split_channels(" , ") == []
        assert split_channels("general, random ,") == ["general", "random"]

    @pytest.mark.parametrize("channels", ["", "   ", " , "])
    def test_empty_allow_list_accepts_all(self, registry, bus, channels):
        auditor, _ = build(Auditor, registry, bus, channels=channels)
        assert auditor.channel_is_watched("C999")
        assert auditor.channel_is_watched("G1")

    def test_allow_list_match(self, registry, bus, transports):
        auditor, _ = build(Auditor, registry, bus, channels="general")
        transports.latest("T1").channels = {"general": "C1", "random": "C2"}
        assert auditor.channel_is_watched("C1")
        assert not auditor.channel_is_watched("C2")

    def test_dm_always_accepted(self, registry, bus):
        auditor, _ = build(Auditor, registry, bus, channels="general")
        assert auditor.channel_is_watched("D0123")

    def test_unresolved_names_skipped(self, registry, bus, transports):
        auditor, _ = build(Auditor, registry, bus, channels="ghost, random")
        transports.latest("T1").channels = {"random": "C2"}
        assert auditor.channel_is_watched("C2")
        assert not auditor.channel_is_watched("C1")

    def test_missing_channel_with_allow_list(self, registry, bus):
        auditor, _ = build(Auditor, registry, bus, channels="general")
        assert not auditor.channel_is_watched(None)


@given(channel_id=st.text(min_size=1, max_size=12))
def test_dm_prefix_always_watched(channel_id):
    """Property: any D-prefixed id passes a non-empty allow-list."""
    registry = ConnectionRegistry(Bus(), FakeTransportFactory())
    auditor = Auditor(ConsumerConfig(token="T1", channels="general"), registry=registry, bus=Bus())
    assert auditor.channel_is_watched("D" + channel_id)


@given(channel_id=st.text(max_size=12))
def test_empty_allow_list_watches_everything(channel_id):
    registry = ConnectionRegistry(Bus(), FakeTransportFactory())
    auditor = Auditor(ConsumerConfig(token="T1"), registry=registry, bus=Bus())
    assert auditor.channel_is_watched(channel_id)


class TestAuditor:
    def test_emits_message(self, registry, bus, transports):
        auditor, sink = build(Auditor, registry, bus)
        transport = transports.latest("T1")
        transport.authenticate()
        raw = {"channel": "C123", "text": "hello", "subtype": None, "ts": "1.5", "user": "U7"}
        transport.deliver(raw)
        assert len(sink.outputs) == 1
        out = sink.outputs[0].to_dict()
        assert out["payload"] == "hello"
        assert out["channel"] == {"id": "C123"}
        assert out["raw"] == raw
        assert out["meta"] == {"timestamp": "1.5", "author": "U7"}

    def test_attachments_in_meta(self, registry, bus, transports):
        auditor, sink = build(Auditor, registry, bus)
        transports.latest("T1").deliver({"channel": "C1", "text": "x", "attachments": [{"title": "t"}]})
        assert sink.outputs[0].to_dict()["meta"]["attachments"] == [{"title": "t"}]

    def test_malformed_attachments_do_not_stop_consumer(self, registry, bus, transports):
        auditor, sink = build(Auditor, registry, bus)
        transport = transports.latest("T1")
        transport.deliver({"channel": "C1", "text": "bad", "attachments": "{oops"})
        transport.deliver({"channel": "C1", "text": "good"})
        assert [o.payload for o in sink.outputs] == ["bad", "good"]
        assert "attachments" not in sink.outputs[0].to_dict()["meta"]
        assert auditor.state is not ConsumerState.CLOSED

    @pytest.mark.parametrize("channels", ["", "general"])
    def test_deleted_never_emitted(self, registry, bus, transports, channels):
        auditor, sink = build(Auditor, registry, bus, channels=channels)
        transport = transports.latest("T1")
        transport.channels = {"general": "C1"}
        transport.deliver({"channel": "C1", "subtype": "message_deleted"})
        transport.deliver({"channel": "D1", "subtype": "message_deleted"})
        assert sink.outputs == []

    def test_filtered_channel_dropped(self, registry, bus, transports):
        auditor, sink = build(Auditor, registry, bus, channels="general")
        transport = transports.latest("T1")
        transport.channels = {"general": "C1", "random": "C2"}
        transport.deliver({"channel": "C2", "text": "nope"})
        transport.deliver({"channel": "C1", "text": "yes"})
        transport.deliver({"channel": "D5", "text": "dm"})
        assert [o.payload for o in sink.outputs] == ["yes", "dm"]

    def test_failing_output_does_not_block_other_consumers(self, registry, bus, transports):
        def broken(record):
            raise RuntimeError("host exploded")

        Auditor(ConsumerConfig(token="T1"), registry=registry, bus=bus, on_output=broken)
        _, sink = build(Auditor, registry, bus)
        transports.latest("T1").deliver({"channel": "C1", "text": "x"})
        assert len(sink.outputs) == 1


class TestSpeaker:
    @pytest.mark.asyncio
    async def test_sends_payload(self, registry, bus, transports):
        speaker, sink = build(Speaker, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        assert await speaker.receive({"payload": "hi there", "channel": {"id": "C1"}})
        assert transport.sent == [("hi there", "C1")]
        assert sink.errors == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["", "   ", None])
    async def test_blank_payload_uses_placeholder(self, registry, bus, transports, payload):
        speaker, _ = build(Speaker, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        await speaker.receive({"payload": payload, "channel": {"id": "C1"}})
        assert transport.sent == [(PLACEHOLDER_NOTICE, "C1")]

    @pytest.mark.asyncio
    async def test_missing_payload_key_uses_placeholder(self, registry, bus, transports):
        speaker, _ = build(Speaker, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        await speaker.receive({"channel": {"id": "DM1"}})
        assert transport.sent == [(PLACEHOLDER_NOTICE, "DM1")]

    @pytest.mark.asyncio
    async def test_not_connected_reported(self, registry, bus, transports):
        speaker, sink = build(Speaker, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        transport.drop()
        assert not await speaker.receive({"payload": "hi", "channel": {"id": "C1"}})
        assert transport.sent == []
        assert len(sink.errors) == 1
        assert isinstance(sink.errors[0], NotConnected)
        assert speaker.status.level == "error"

    @pytest.mark.asyncio
    async def test_missing_channel_reported(self, registry, bus, transports):
        speaker, sink = build(Speaker, registry, bus)
        transports.latest("T1").open()
        assert not await speaker.receive({"payload": "hi"})
        assert isinstance(sink.errors[0], MalformedPayload)

    @pytest.mark.asyncio
    async def test_input_after_close_dropped(self, registry, bus, transports):
        speaker, sink = build(Speaker, registry, bus)
        transports.latest("T1").open()
        speaker.close()
        assert not await speaker.receive({"payload": "hi", "channel": {"id": "C1"}})
        assert sink.errors == []

    @pytest.mark.asyncio
    async def test_close_mid_send_discards_result(self, registry, bus, transports):
        keep, _ = build(Auditor, registry, bus)
        speaker, sink = build(Speaker, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        transport.delay = 0.05
        transport.send_error = RuntimeError("late failure")
        task = asyncio.create_task(speaker.receive({"payload": "hi", "channel": {"id": "C1"}}))
        await asyncio.sleep(0)
        speaker.close()
        assert await task is False
        assert sink.errors == []


class TestHistorySearch:
    RESULTS = [
        {"channel": {"id": "C1", "name": "general"}, "text": "camembert a", "ts": "1.0", "user": "U1"},
        {"channel": {"id": "C2", "name": "random"}, "text": "camembert b", "ts": "2.0", "user": "U2"},
        {"channel": {"id": "C1", "name": "general"}, "text": "gone", "ts": "3.0", "subtype": "message_deleted"},
        "not a message",
    ]

    @pytest.mark.asyncio
    async def test_history_event_runs_search(self, registry, bus, transports):
        history, sink = build(HistorySearch, registry, bus, query="camembert")
        transport = transports.latest("T1")
        transport.search_results = list(self.RESULTS)
        transport.open()
        await history.wait_idle()
        assert transport.queries == ["camembert"]
        assert [o.payload for o in sink.outputs] == ["camembert a", "camembert b"]

    @pytest.mark.asyncio
    async def test_channel_filter_applies(self, registry, bus, transports):
        history, sink = build(HistorySearch, registry, bus, query="camembert", channels="general")
        transport = transports.latest("T1")
        transport.channels = {"general": "C1", "random": "C2"}
        transport.search_results = list(self.RESULTS)
        transport.open()
        await history.wait_idle()
        assert [o.channel_id for o in sink.outputs] == ["C1"]

    @pytest.mark.asyncio
    async def test_reconnect_does_not_repeat_results(self, registry, bus, transports):
        history, sink = build(HistorySearch, registry, bus, query="camembert")
        transport = transports.latest("T1")
        transport.search_results = list(self.RESULTS)
        transport.open()
        await history.wait_idle()
        transport.drop()
        transport.search_results.append({"channel": "C3", "text": "camembert c", "ts": "4.0"})
        transport.handler.on_connection_opened()
        await history.wait_idle()
        assert transport.queries == ["camembert", "camembert"]
        assert [o.payload for o in sink.outputs] == ["camembert a", "camembert b", "camembert c"]

    @pytest.mark.asyncio
    async def test_blank_query_skips_search(self, registry, bus, transports):
        history, sink = build(HistorySearch, registry, bus)
        transport = transports.latest("T1")
        transport.open()
        await history.wait_idle()
        assert transport.queries == []
        assert sink.outputs == []

    @pytest.mark.asyncio
    async def test_search_unavailable_reported(self, registry, bus, transports):
        history, sink = build(HistorySearch, registry, bus, query="q")
        assert await history.run_search() == 0
        assert isinstance(sink.errors[0], SearchUnavailable)

    @pytest.mark.asyncio
    async def test_close_cancels_pending_search(self, registry, bus, transports):
        history, sink = build(HistorySearch, registry, bus, query="q")
        transport = transports.latest("T1")
        transport.delay = 0.2
        transport.search_results = [{"channel": "C1", "text": "late", "ts": "1"}]
        transport.open()
        history.close()
        await history.wait_idle()
        assert sink.outputs == []
        assert sink.errors == []

    @pytest.mark.asyncio
    async def test_joining_open_connection_searches_once(self, registry, bus, transports):
        build(Auditor, registry, bus)
        transport = transports.latest("T1")
        transport.search_results = list(self.RESULTS)
        transport.open()

        history, sink = build(HistorySearch, registry, bus, query="camembert")
        await history.wait_idle()
        assert transport.queries == ["camembert"]
        assert [o.payload for o in sink.outputs] == ["camembert a", "camembert b"]

    @pytest.mark.asyncio
    async def test_joining_open_connection_without_query_skips(self, registry, bus, transports):
        build(Auditor, registry, bus)
        transport = transports.latest("T1")
        transport.open()

        history, sink = build(HistorySearch, registry, bus)
        await history.wait_idle()
        assert transport.queries == []

    @pytest.mark.asyncio
    async def test_failing_output_does_not_stop_remaining_results(self, registry, bus, transports):
        seen = []

        def flaky(record):
            seen.append(record.payload)
            if record.payload == "camembert a":
                raise RuntimeError("host exploded")

        history = HistorySearch(
            ConsumerConfig(token="T1", query="camembert"),
            registry=registry,
            bus=bus,
            on_output=flaky,
        )
        transport = transports.latest("T1")
        transport.search_results = list(self.RESULTS)
        transport.open()
        await history.wait_idle()
        assert seen == ["camembert a", "camembert b"]
        assert await history.run_search() == 0

    @pytest.mark.asyncio
    async def test_background_task_failure_is_logged(self, registry, bus):
        history, _ = build(HistorySearch, registry, bus, query="q")

        async def boom():
            raise RuntimeError("search pipeline broke")

        with patch("slackrelay.consumers.base.logger") as mock_logger:
            history._spawn(boom())
            await history.wait_idle()

        exc = mock_logger.opt.call_args.kwargs["exception"]
        assert isinstance(exc, RuntimeError)
        mock_logger.opt.return_value.error.assert_called_once()
