import asyncio
import unittest

from flagrank.bus import EventBus, LiveView


class CountingView(LiveView):
    topics = ("events",)

    def __init__(self, bus, fail_first=False):
        super().__init__(bus)
        self.refreshes = 0
        self.fail_first = fail_first

    async def refresh(self):
        self.refreshes += 1
        if self.fail_first and self.refreshes == 1:
            raise RuntimeError("boom")


class TestEventBus(unittest.IsolatedAsyncioTestCase):
    async def test_publish_reaches_matching_subscriptions_only(self):
        bus = EventBus()
        async with bus.subscribe("teams") as teams, bus.subscribe("events") as events:
            delivered = bus.publish("teams", {"teamId": "a"})

            self.assertEqual(delivered, 1)
            notification = await teams.get(timeout=1)
            self.assertEqual(notification.payload, {"teamId": "a"})
            self.assertEqual(events.pending(), 0)

    async def test_leaving_context_unsubscribes(self):
        bus = EventBus()
        async with bus.subscribe("teams"):
            self.assertEqual(bus.subscriber_count, 1)
        self.assertEqual(bus.subscriber_count, 0)

    async def test_unsubscribes_when_block_raises(self):
        bus = EventBus()
        with self.assertRaises(RuntimeError):
            async with bus.subscribe("teams"):
                raise RuntimeError("reader failed")

        self.assertEqual(bus.subscriber_count, 0)
        self.assertEqual(bus.publish("teams"), 0)

    async def test_full_queue_drops_oldest(self):
        bus = EventBus(queue_size=2)
        async with bus.subscribe("events") as feed:
            for i in range(3):
                bus.publish("events", {"n": i})

            self.assertEqual(feed.dropped, 1)
            first = await feed.get(timeout=1)
            self.assertEqual(first.payload, {"n": 1})

    async def test_iteration_ends_on_close(self):
        bus = EventBus()
        feed = bus.subscribe()
        bus.publish("levels", {"n": 1})
        bus.close()

        received = [n.topic async for n in feed]

        self.assertEqual(received, ["levels"])

    async def test_unknown_topic_is_rejected(self):
        bus = EventBus()
        with self.assertRaises(ValueError):
            bus.subscribe("scores")
        with self.assertRaises(ValueError):
            bus.publish("scores")


class TestLiveView(unittest.IsolatedAsyncioTestCase):
    async def test_refreshes_on_start_and_on_notification(self):
        bus = EventBus()
        async with CountingView(bus) as view:
            self.assertEqual(view.refreshes, 1)

            bus.publish("events")
            await view.wait_for_version(2, timeout=1)

            self.assertEqual(view.refreshes, 2)
        self.assertEqual(bus.subscriber_count, 0)

    async def test_failed_refresh_keeps_following(self):
        bus = EventBus()
        view = CountingView(bus, fail_first=True)
        await view.start()
        try:
            self.assertEqual(view.version, 0)
            bus.publish("events")
            await view.wait_for_version(1, timeout=1)
            self.assertTrue(view.running)
        finally:
            await view.stop()

        self.assertFalse(view.running)

    async def test_wait_for_version_times_out(self):
        bus = EventBus()
        async with CountingView(bus) as view:
            with self.assertRaises(asyncio.TimeoutError):
                await view.wait_for_version(5, timeout=0.05)


if __name__ == "__main__":
    unittest.main()
