import asyncio
import unittest

from convo_compactor.progress import EventType, ProgressBus, ProgressEvent


def _event(event_type: EventType = EventType.PROGRESS, session_id: str = "s1", progress: int = 0) -> ProgressEvent:
    return ProgressEvent(
        type=event_type,
        workspace_id="w",
        conversation_id="c",
        session_id=session_id,
        kind="compact",
        status="processing",
        progress=progress,
    )


class ProgressBusTests(unittest.TestCase):
    def test_subscribe_and_unsubscribe(self) -> None:
        bus = ProgressBus()
        seen: list[ProgressEvent] = []
        unsubscribe = bus.subscribe(seen.append)
        bus.publish(_event(progress=10))
        unsubscribe()
        unsubscribe()
        bus.publish(_event(progress=20))
        self.assertEqual([10], [e.progress for e in seen])
        self.assertEqual(0, bus.subscriber_count)

    def test_failing_subscriber_does_not_reach_producer(self) -> None:
        bus = ProgressBus()
        seen: list[ProgressEvent] = []

        def broken(event: ProgressEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        self.assertTrue(bus.publish(_event()))
        self.assertEqual(1, len(seen))

    def test_terminal_event_delivered_once_per_session(self) -> None:
        bus = ProgressBus()
        seen: list[ProgressEvent] = []
        bus.subscribe(seen.append)
        self.assertTrue(bus.publish(_event(EventType.CANCELLED)))
        self.assertFalse(bus.publish(_event(EventType.FAILED)))
        self.assertTrue(bus.publish(_event(EventType.COMPLETED, session_id="s2")))
        self.assertEqual([EventType.CANCELLED, EventType.COMPLETED], [e.type for e in seen])

    def test_terminal_dedup_remembers_only_recent_sessions(self) -> None:
        bus = ProgressBus(terminal_history=3)
        for index in range(10_000):
            self.assertTrue(bus.publish(_event(EventType.COMPLETED, session_id=f"s{index}")))

        self.assertEqual(3, len(bus._terminated))
        self.assertFalse(bus.publish(_event(EventType.FAILED, session_id="s9999")))
        # Long-finished sessions are forgotten.
        self.assertTrue(bus.publish(_event(EventType.FAILED, session_id="s0")))

    def test_no_replay_for_late_subscribers(self) -> None:
        bus = ProgressBus()
        bus.publish(_event(progress=5))
        seen: list[ProgressEvent] = []
        bus.subscribe(seen.append)
        self.assertEqual([], seen)


class QueueSubscriptionTests(unittest.TestCase):
    def test_full_queue_drops_oldest(self) -> None:
        bus = ProgressBus()
        subscription = bus.subscribe_queue(maxsize=2)
        for progress in (1, 2, 3):
            bus.publish(_event(progress=progress))
        self.assertEqual(2, subscription.pending())
        self.assertEqual(1, subscription.dropped)
        self.assertEqual(2, subscription.get_nowait().progress)
        self.assertEqual(3, subscription.get_nowait().progress)
        self.assertIsNone(subscription.get_nowait())

    def test_session_filter_closes_on_terminal_event(self) -> None:
        bus = ProgressBus()

        async def scenario() -> list[ProgressEvent]:
            subscription = bus.subscribe_queue(maxsize=10, session_id="s1")
            bus.publish(_event(progress=10))
            bus.publish(_event(session_id="other", progress=50))
            bus.publish(_event(EventType.COMPLETED, progress=100))
            bus.publish(_event(progress=99))
            return [event async for event in subscription]

        events = asyncio.run(scenario())
        self.assertEqual([10, 100], [e.progress for e in events])
        self.assertEqual(0, bus.subscriber_count)

    def test_iterator_waits_for_events(self) -> None:
        bus = ProgressBus()

        async def scenario() -> list[int]:
            subscription = bus.subscribe_queue(maxsize=10)

            async def producer() -> None:
                for progress in (5, 10):
                    await asyncio.sleep(0)
                    bus.publish(_event(progress=progress))
                subscription.close()

            task = asyncio.create_task(producer())
            received = [event.progress async for event in subscription]
            await task
            return received

        self.assertEqual([5, 10], asyncio.run(scenario()))


if __name__ == "__main__":
    unittest.main()
