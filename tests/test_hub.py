import asyncio
import threading

from app.hub import EventHub


def test_publish_reaches_every_subscriber():
    async def scenario():
        hub = EventHub()
        first, second = hub.subscribe(), hub.subscribe()
        hub.publish("message:new", {"message_id": "m1"})
        return await asyncio.wait_for(first.get(), 1), await asyncio.wait_for(second.get(), 1)

    assert asyncio.run(scenario()) == (
        ("message:new", {"message_id": "m1"}),
        ("message:new", {"message_id": "m1"}),
    )


def test_publish_from_worker_thread():
    async def scenario():
        hub = EventHub()
        queue = hub.subscribe()
        worker = threading.Thread(target=hub.publish, args=("message:status", {"status": "read"}))
        worker.start()
        item = await asyncio.wait_for(queue.get(), 1)
        worker.join()
        return item

    assert asyncio.run(scenario()) == ("message:status", {"status": "read"})


def test_full_queue_drops_subscriber():
    async def scenario():
        hub = EventHub(queue_maxsize=1)
        queue = hub.subscribe()
        hub.publish("a", 1)
        hub.publish("b", 2)
        # let the scheduled hand-offs run
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return hub.subscriber_count, queue.qsize()

    assert asyncio.run(scenario()) == (0, 1)


def test_unsubscribe_stops_delivery():
    async def scenario():
        hub = EventHub()
        queue = hub.subscribe()
        hub.unsubscribe(queue)
        hub.publish("a", 1)
        await asyncio.sleep(0)
        return queue.empty(), hub.subscriber_count

    assert asyncio.run(scenario()) == (True, 0)
