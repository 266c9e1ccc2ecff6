"""Tests for the deployment event bus."""
import asyncio

from core.events import DeploymentEventBus


async def test_subscriber_receives_events_until_terminal():
    bus = DeploymentEventBus()
    subscription = bus.subscribe("deploy-1")
    bus.publish("deploy-1", "log", {"message": "hello"})
    bus.publish("deploy-1", "status", {"status": "building"})
    bus.close("deploy-1", "success", {"status": "success"})

    received = [item async for item in subscription]
    assert [i.event for i in received] == ["log", "status", "success"]
    assert received[-1].terminal is True
    assert bus.subscriber_count("deploy-1") == 0


async def test_publish_without_subscribers_is_noop():
    bus = DeploymentEventBus()
    bus.publish("deploy-1", "log", {})
    bus.close("deploy-1", "failed", {})


async def test_topics_are_isolated():
    bus = DeploymentEventBus()
    first = bus.subscribe("deploy-1")
    bus.subscribe("deploy-2")
    bus.publish("deploy-2", "log", {})
    assert first.queue.empty()


async def test_full_queue_drops_oldest():
    bus = DeploymentEventBus(max_queue_size=2)
    subscription = bus.subscribe("deploy-1")
    for i in range(3):
        bus.publish("deploy-1", "log", {"n": i})
    items = [subscription.queue.get_nowait() for _ in range(2)]
    assert [i.data["n"] for i in items] == [1, 2]


async def test_close_unsubscribes():
    bus = DeploymentEventBus()
    with bus.subscribe("deploy-1"):
        assert bus.subscriber_count("deploy-1") == 1
    assert bus.subscriber_count("deploy-1") == 0


async def test_subscriber_waits_for_events():
    bus = DeploymentEventBus()
    subscription = bus.subscribe("deploy-1")

    async def producer():
        await asyncio.sleep(0.01)
        bus.close("deploy-1", "success", {})

    asyncio.create_task(producer())
    item = await asyncio.wait_for(subscription.__anext__(), timeout=1)
    assert item.event == "success"
