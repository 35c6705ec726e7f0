"""Test suite for the event bus."""

import asyncio

import pytest

from parley_chat.domain.events import EventBus, EventType


def test_handlers_run_in_registration_order():
    """Test handlers of one topic are invoked in the order they subscribed."""
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.CHAT_CREATED, lambda p: calls.append(("first", p)))
    bus.subscribe(EventType.CHAT_CREATED, lambda p: calls.append(("second", p)))

    delivered = bus.publish(EventType.CHAT_CREATED, 7)

    assert delivered == 2
    assert calls == [("first", 7), ("second", 7)]


def test_failing_handler_does_not_stop_dispatch():
    """Test a raising handler is recorded and the remaining handlers still run."""
    bus = EventBus()
    calls = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.subscribe("chat:updated", broken)
    bus.subscribe("chat:updated", calls.append)

    delivered = bus.publish("chat:updated", "payload")

    assert delivered == 1
    assert calls == ["payload"]
    assert len(bus.failures) == 1
    assert bus.failures[0].topic == "chat:updated"
    assert bus.failures[0].error == "boom"


def test_enum_and_string_topics_are_the_same():
    """Test subscribing with an enum and publishing with its value reaches the handler."""
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.UI_RENDER, calls.append)

    assert bus.publish("ui:render", 1) == 1
    assert calls == [1]


def test_once_handler_self_unsubscribes():
    """Test once handlers fire on the first publish only."""
    bus = EventBus()
    calls = []
    bus.once(EventType.APP_READY, calls.append)

    bus.publish(EventType.APP_READY, "a")
    bus.publish(EventType.APP_READY, "b")

    assert calls == ["a"]
    assert bus.handler_count(EventType.APP_READY) == 0


def test_unsubscribe_function_and_unknown_handler():
    """Test the returned unsubscribe works and removing an unknown handler is a no-op."""
    bus = EventBus()
    calls = []
    unsubscribe = bus.subscribe(EventType.CHAT_DELETED, calls.append)

    unsubscribe()
    unsubscribe()
    bus.unsubscribe(EventType.CHAT_DELETED, print)
    bus.unsubscribe("never:registered", print)

    assert bus.publish(EventType.CHAT_DELETED, 1) == 0
    assert calls == []


def test_duplicate_subscription_is_stored_once():
    """Test the same handler registered twice runs once per publish."""
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.CHAT_SEARCH, calls.append)
    bus.subscribe(EventType.CHAT_SEARCH, calls.append)

    bus.publish(EventType.CHAT_SEARCH, "q")

    assert calls == ["q"]


def test_subscribe_rejects_non_callable():
    """Test subscribing something that is not callable raises TypeError."""
    bus = EventBus()
    with pytest.raises(TypeError):
        bus.subscribe(EventType.CHAT_SEARCH, "not callable")


def test_introspection():
    """Test handler counts, topic list and diagnostics."""
    bus = EventBus()
    bus.subscribe(EventType.CHAT_CREATED, lambda p: None)
    bus.subscribe(EventType.CHAT_CREATED, lambda p: None)
    bus.subscribe(EventType.CACHE_CLEAR, lambda p: None)

    assert bus.handler_count(EventType.CHAT_CREATED) == 2
    assert set(bus.topics()) == {"chat:created", "cache:clear"}

    info = bus.diagnostics()
    assert info["total_topics"] == 2
    assert info["total_handlers"] == 3

    bus.clear(EventType.CHAT_CREATED)
    assert bus.topics() == ["cache:clear"]
    bus.clear()
    assert bus.topics() == []


@pytest.mark.asyncio
async def test_publish_async_awaits_handlers_and_counts_successes():
    """Test the awaited dispatch waits for coroutine handlers and reports successes."""
    bus = EventBus()
    done = []

    async def slow(payload):
        await asyncio.sleep(0.01)
        done.append(payload)

    async def failing(payload):
        raise ValueError("nope")

    bus.subscribe(EventType.STORAGE_SAVED, slow)
    bus.subscribe(EventType.STORAGE_SAVED, failing)
    bus.subscribe(EventType.STORAGE_SAVED, done.append)

    succeeded = await bus.publish_async(EventType.STORAGE_SAVED, "x")

    assert succeeded == 2
    assert sorted(done) == ["x", "x"]
    assert len(bus.failures) == 1
