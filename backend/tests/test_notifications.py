"""Tests for the session notification bus."""

from decimal import Decimal

import pytest

from gains_sandbox.services.gains_engine import GainSummary
from gains_sandbox.services.notifications import (
    InMemoryNotificationBus,
    completion_message,
    failure_message,
    topic_for,
)


@pytest.fixture
async def bus():
    bus = InMemoryNotificationBus()
    await bus.open()
    yield bus
    await bus.close()


def test_topic_for():
    assert topic_for("abc") == "sandbox:abc"


def test_message_shapes():
    summary = GainSummary(Decimal("10.5"), Decimal("0"), Decimal("10.5"))

    assert completion_message(summary) == {
        "summary": {"shortTermGain": "10.5", "longTermGain": "0", "totalGain": "10.5"}
    }
    assert failure_message("cancelled") == {"error": True, "message": "cancelled"}


@pytest.mark.asyncio
async def test_publish_reaches_all_listeners(bus):
    first = await bus.subscribe(topic_for("s1"))
    second = await bus.subscribe(topic_for("s1"))

    delivered = await bus.publish(topic_for("s1"), {"n": 1})

    assert delivered == 2
    assert await first.get(timeout=0.1) == {"n": 1}
    assert await second.get(timeout=0.1) == {"n": 1}


@pytest.mark.asyncio
async def test_topics_are_isolated(bus):
    mine = await bus.subscribe(topic_for("s1"))

    assert await bus.publish(topic_for("s2"), {"n": 1}) == 0
    assert await mine.get(timeout=0.05) is None


@pytest.mark.asyncio
async def test_no_replay_for_late_subscriber(bus):
    await bus.publish(topic_for("s1"), {"n": 1})

    late = await bus.subscribe(topic_for("s1"))
    assert await late.get(timeout=0.05) is None


@pytest.mark.asyncio
async def test_context_manager_unsubscribes(bus):
    async with await bus.subscribe(topic_for("s1")) as subscription:
        assert bus.listener_count(topic_for("s1")) == 1

    assert subscription.closed is True
    assert bus.listener_count(topic_for("s1")) == 0
    assert await bus.publish(topic_for("s1"), {"n": 1}) == 0


@pytest.mark.asyncio
async def test_close_is_idempotent(bus):
    subscription = await bus.subscribe(topic_for("s1"))
    await subscription.close()
    await subscription.close()

    assert bus.listener_count(topic_for("s1")) == 0


@pytest.mark.asyncio
async def test_publish_requires_open_bus():
    bus = InMemoryNotificationBus()
    with pytest.raises(RuntimeError):
        await bus.publish(topic_for("s1"), {})
