"""Lifecycle tests for NFTMarketEventListener against a fake log source."""

from decimal import Decimal

import pytest

from core.errors import LogSourceConnectionError
from core.events import EventKind
from core.listener import ListenerState, NFTMarketEventListener
from tests.fakes import FakeLogSource, make_bought_log, make_listed_log, make_unknown_log


class RefusingLogSource(FakeLogSource):
    """Fails subscriptions with whatever the node client raised, not a wrapped error"""

    def __init__(self, refuse, error=None):
        super().__init__()
        self.refuse = set(refuse)
        self.error = error or ConnectionRefusedError("[Errno 111] Connection refused")
        self.registered = []

    async def subscribe(self, kind, callback):
        self.subscribe_calls += 1
        if kind in self.refuse:
            raise self.error
        self.registered.append(callback)
        self.subscriptions.setdefault(kind, []).append(callback)
        return (kind, len(self.subscriptions[kind]))


class TestStart:

    @pytest.mark.asyncio
    async def test_start_registers_one_subscription_per_kind(self, source, sink):
        listener = NFTMarketEventListener(source, sink)

        await listener.start()

        assert listener.state is ListenerState.LISTENING
        assert listener.is_listening
        assert source.subscription_count(EventKind.LISTED) == 1
        assert source.subscription_count(EventKind.BOUGHT) == 1
        assert source.error_callback is not None
        await listener.stop()

    @pytest.mark.asyncio
    async def test_second_start_does_not_duplicate(self, source, sink):
        listener = NFTMarketEventListener(source, sink)

        await listener.start()
        await listener.start()
        await source.push(EventKind.LISTED, make_listed_log(token_id=1, price=10))
        await listener.drain()

        assert source.subscribe_calls == 2
        assert source.subscription_count(EventKind.LISTED) == 1
        assert len(sink.delivered) == 1
        await listener.stop()

    @pytest.mark.asyncio
    async def test_connection_failure_leaves_listener_idle(self, sink):
        source = FakeLogSource(fail_subscribe_for={EventKind.BOUGHT})
        listener = NFTMarketEventListener(source, sink)

        with pytest.raises(LogSourceConnectionError):
            await listener.start()

        assert listener.state is ListenerState.IDLE
        # the listed subscription that did succeed is rolled back
        assert source.subscription_count(EventKind.LISTED) == 0
        assert source.error_callback is None

    @pytest.mark.asyncio
    async def test_builtin_connection_error_rolls_back(self, sink):
        source = RefusingLogSource(refuse={EventKind.BOUGHT})
        listener = NFTMarketEventListener(source, sink)

        with pytest.raises(ConnectionRefusedError):
            await listener.start()

        assert listener.state is ListenerState.IDLE
        assert source.subscription_count(EventKind.LISTED) == 0

        source.refuse.clear()
        await listener.start()
        await source.push(EventKind.LISTED, make_listed_log(token_id=1, price=10))
        await listener.drain()

        assert len(sink.delivered) == 1
        await listener.stop()

    @pytest.mark.asyncio
    async def test_unexpected_subscribe_error_is_wrapped(self, sink):
        source = RefusingLogSource(refuse={EventKind.LISTED}, error=RuntimeError("invalid response"))
        listener = NFTMarketEventListener(source, sink)

        with pytest.raises(LogSourceConnectionError) as excinfo:
            await listener.start()

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert listener.state is ListenerState.IDLE

    @pytest.mark.asyncio
    async def test_callback_from_failed_start_is_ignored_after_restart(self, sink):
        source = RefusingLogSource(refuse={EventKind.BOUGHT})
        listener = NFTMarketEventListener(source, sink)
        with pytest.raises(ConnectionRefusedError):
            await listener.start()
        stale_callback = source.registered[0]

        source.refuse.clear()
        await listener.start()
        await stale_callback(make_listed_log(token_id=1, price=10))
        await listener.drain()

        assert sink.delivered == []
        await listener.stop()

    @pytest.mark.asyncio
    async def test_can_start_after_failed_start(self, sink):
        source = FakeLogSource(fail_subscribe_for={EventKind.LISTED})
        listener = NFTMarketEventListener(source, sink)
        with pytest.raises(LogSourceConnectionError):
            await listener.start()

        source.fail_subscribe_for.clear()
        await listener.start()

        assert listener.is_listening
        await listener.stop()


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, source, sink):
        listener = NFTMarketEventListener(source, sink)

        await listener.stop()

        assert listener.state is ListenerState.IDLE
        assert source.unsubscribe_calls == 0

    @pytest.mark.asyncio
    async def test_stop_tears_down_once(self, source, sink):
        listener = NFTMarketEventListener(source, sink)
        await listener.start()

        await listener.stop()
        await listener.stop()

        assert source.unsubscribe_calls == 1
        assert source.error_callback is None
        assert not listener.is_listening

    @pytest.mark.asyncio
    async def test_stop_survives_dead_connection(self, sink):
        source = FakeLogSource(fail_unsubscribe=True)
        listener = NFTMarketEventListener(source, sink)
        await listener.start()

        await listener.stop()

        assert listener.state is ListenerState.IDLE

    @pytest.mark.asyncio
    async def test_late_push_after_stop_is_not_delivered(self, source, sink):
        listener = NFTMarketEventListener(source, sink)
        await listener.start()
        stale_callback = source.subscriptions[EventKind.LISTED][0]

        await listener.stop()
        await stale_callback(make_listed_log(token_id=1, price=10))

        assert sink.delivered == []

    @pytest.mark.asyncio
    async def test_stop_discards_queued_records(self, source, sink):
        listener = NFTMarketEventListener(source, sink)
        await listener.start()

        for token_id in range(3):
            await source.push(EventKind.LISTED, make_listed_log(token_id=token_id, price=10))
        await listener.stop()
        await listener.drain()

        assert sink.delivered == []

    @pytest.mark.asyncio
    async def test_context_manager(self, source, sink):
        async with NFTMarketEventListener(source, sink) as listener:
            assert listener.is_listening
        assert not listener.is_listening
        assert source.unsubscribe_calls == 1


class TestDelivery:

    @pytest.mark.asyncio
    async def test_listed_logs_delivered_in_order(self, source, sink):
        listener = NFTMarketEventListener(source, sink)
        await listener.start()
        prices = [(i + 1) * 5 * 10 ** 17 for i in range(6)]

        for i, price in enumerate(prices):
            await source.push(EventKind.LISTED, make_listed_log(token_id=i, price=price, block_number=100 + i))
        await listener.drain()
        await listener.stop()

        assert [event.token_id for event in sink.events] == list(range(6))
        assert [event.price for event in sink.events] == prices
        assert [event.price_ether for event in sink.events] == [Decimal(p) / Decimal(10 ** 18) for p in prices]
        assert all(context.received_live for _, context in sink.delivered)

    @pytest.mark.asyncio
    async def test_both_kinds_delivered(self, source, sink):
        listener = NFTMarketEventListener(source, sink, queue_size=1)
        await listener.start()

        await source.push(EventKind.BOUGHT, make_bought_log(token_id=3, price=1))
        await source.push(EventKind.LISTED, make_listed_log(token_id=4, price=1))
        await source.push(EventKind.BOUGHT, make_bought_log(token_id=5, price=1))
        await listener.drain()
        await listener.stop()

        bought = [event.token_id for event in sink.events if event.kind is EventKind.BOUGHT]
        listed = [event.token_id for event in sink.events if event.kind is EventKind.LISTED]
        assert bought == [3, 5]
        assert listed == [4]

    @pytest.mark.asyncio
    async def test_unknown_topic_is_dropped_silently(self, source, sink):
        listener = NFTMarketEventListener(source, sink)
        await listener.start()

        await source.push(EventKind.LISTED, make_unknown_log())
        await source.push(EventKind.LISTED, make_listed_log(token_id=1, price=1))
        await listener.drain()

        assert [event.token_id for event in sink.events] == [1]
        assert listener.is_listening
        await listener.stop()

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_delivery(self, source):
        delivered = []

        class FlakySink:
            def deliver(self, event, context):
                if event.token_id == 1:
                    raise RuntimeError("display unavailable")
                delivered.append(event.token_id)

        listener = NFTMarketEventListener(source, FlakySink())
        await listener.start()
        for token_id in (1, 2):
            await source.push(EventKind.LISTED, make_listed_log(token_id=token_id, price=1))
        await listener.drain()
        await listener.stop()

        assert delivered == [2]


class TestConnectionErrors:

    @pytest.mark.asyncio
    async def test_runtime_error_is_reported_not_fatal(self, source, sink):
        observed = []
        listener = NFTMarketEventListener(source, sink, error_observer=observed.append)
        await listener.start()
        error = ConnectionResetError("socket hang up")

        source.emit_error(error)
        await source.push(EventKind.LISTED, make_listed_log(token_id=1, price=1))
        await listener.drain()

        assert observed == [error]
        assert listener.is_listening
        assert len(sink.delivered) == 1
        await listener.stop()

    @pytest.mark.asyncio
    async def test_error_listener_removed_on_stop(self, source, sink):
        observed = []
        listener = NFTMarketEventListener(source, sink, error_observer=observed.append)
        await listener.start()
        await listener.stop()

        source.emit_error(ConnectionResetError("socket hang up"))

        assert observed == []
