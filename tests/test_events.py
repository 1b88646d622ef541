import asyncio

import pytest

from queue_pilot.runtime.events import LOG, QUEUE_UPDATE, EventBus, QueueUpdate


def test_publish_without_loop_delivers_inline():
    bus = EventBus()
    seen = []
    bus.subscribe(QUEUE_UPDATE, seen.append)
    update = QueueUpdate(position=5, eta="0h 3m", finish_time="2024-01-01T00:03:00+00:00")
    bus.publish(QUEUE_UPDATE, update)
    assert seen == [update]


def test_unknown_topic_rejected():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe("nope", print)


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(LOG, seen.append)
    unsubscribe()
    unsubscribe()
    bus.publish(LOG, "x")
    assert seen == []


def test_failing_subscriber_isolated(capsys):
    bus = EventBus()
    seen = []

    def _boom(_payload):
        raise RuntimeError("boom")

    bus.subscribe(LOG, _boom)
    bus.subscribe(LOG, seen.append)
    bus.publish(LOG, "entry")
    assert seen == ["entry"]
    assert bus.subscriber_errors == 1
    assert "boom" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_publish_with_loop_is_deferred():
    bus = EventBus()
    seen = []
    bus.subscribe(LOG, seen.append)
    bus.publish(LOG, "later")
    assert seen == []
    await asyncio.sleep(0)
    assert seen == ["later"]
