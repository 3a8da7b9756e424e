import asyncio
import threading

import pytest

from core.exceptions import StreamLimitReached
from services.realtime_notifier import PROCESSING_ADDED, PROCESSING_COMPLETED, RealtimeNotifier

PROJECT = "project-1"


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def item(media_id, name=None, **extra):
    values = {"id": media_id, "kind": "image", "name": name or f"{media_id}.jpg", "status": "Analysis queued"}
    values.update(extra)
    return values


def test_subscribe_is_idempotent():
    notifier = RealtimeNotifier()
    events = []

    first = notifier.subscribe(PROJECT, events.append)
    second = notifier.subscribe(PROJECT, events.append)
    notifier.track(PROJECT, item("a"))

    assert first is second
    assert notifier.subscriber_count(PROJECT) == 1
    assert len(events) == 1


def test_unsubscribe_is_idempotent():
    notifier = RealtimeNotifier()
    events = []
    subscription = notifier.subscribe(PROJECT, events.append)

    subscription.cancel()
    subscription.cancel()
    notifier.unsubscribe(PROJECT, events.append)
    notifier.unsubscribe("other-project", events.append)
    notifier.track(PROJECT, item("a"))

    assert not subscription.active
    assert events == []


def test_fan_out_in_registration_order():
    notifier = RealtimeNotifier(clock=FakeClock())
    seen = []
    notifier.subscribe(PROJECT, lambda e: seen.append(("first", e["type"], e["item"]["id"])))
    notifier.subscribe(PROJECT, lambda e: seen.append(("second", e["type"], e["item"]["id"])))

    notifier.track(PROJECT, item("a"))
    notifier.complete(PROJECT, "a")

    assert seen == [
        ("first", PROCESSING_ADDED, "a"),
        ("second", PROCESSING_ADDED, "a"),
        ("first", PROCESSING_COMPLETED, "a"),
        ("second", PROCESSING_COMPLETED, "a"),
    ]


def test_event_shape():
    notifier = RealtimeNotifier(clock=FakeClock(1_234.5))
    events = []
    notifier.subscribe(PROJECT, events.append)

    notifier.track(PROJECT, item("a", source="customer-upload"))
    notifier.complete(PROJECT, "a", outcome="failed")

    added, completed = events
    assert added["type"] == "processing-added"
    assert added["projectId"] == PROJECT
    assert added["timestamp"] == 1_234_500
    assert added["item"]["startedAt"] == 1_234.5
    assert added["item"]["source"] == "customer-upload"
    assert [i["id"] for i in added["processingItems"]] == ["a"]
    assert completed["outcome"] == "failed"
    assert completed["processingItems"] == []


def test_raising_subscriber_is_skipped():
    notifier = RealtimeNotifier()
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    notifier.subscribe(PROJECT, broken)
    notifier.subscribe(PROJECT, received.append)

    assert notifier.track(PROJECT, item("a"))
    assert len(received) == 1


def test_projects_are_isolated():
    notifier = RealtimeNotifier()
    events = []
    notifier.subscribe(PROJECT, events.append)

    notifier.track("other-project", item("b"))

    assert events == []
    assert notifier.snapshot(PROJECT) == []
    assert [i["id"] for i in notifier.snapshot("other-project")] == ["b"]


def test_track_existing_item_updates_status_without_event():
    notifier = RealtimeNotifier()
    events = []
    notifier.subscribe(PROJECT, events.append)

    assert notifier.track(PROJECT, item("a"))
    assert not notifier.track(PROJECT, item("a", status="Analyzing with AI"))

    assert len(events) == 1
    assert notifier.snapshot(PROJECT)[0]["status"] == "Analyzing with AI"


def test_late_track_after_completion_is_ignored():
    notifier = RealtimeNotifier()
    events = []
    notifier.subscribe(PROJECT, events.append)

    notifier.complete(PROJECT, "a")
    assert not notifier.track(PROJECT, item("a"))

    assert events == []
    assert notifier.snapshot(PROJECT) == []


def test_complete_of_untracked_item():
    notifier = RealtimeNotifier()
    assert not notifier.complete(PROJECT, "never-tracked")
    assert notifier.channel_count() == 0


def test_subscriber_is_seeded_from_rebuild():
    calls = []

    def rebuild(project_id):
        calls.append(project_id)
        return [item("a", startedAt=10.0), item("b", startedAt=20.0)]

    notifier = RealtimeNotifier(rebuild=rebuild)
    first = notifier.subscribe(PROJECT, lambda e: None)
    second = notifier.subscribe(PROJECT, lambda e: None)

    assert [i["id"] for i in first.initial_items] == ["a", "b"]
    assert [i["id"] for i in second.initial_items] == ["a", "b"]
    assert first.initial_items[0]["startedAt"] == 10.0
    assert calls == [PROJECT]


def test_failed_rebuild_is_retried_by_the_next_subscriber():
    attempts = []

    def rebuild(project_id):
        attempts.append(project_id)
        if len(attempts) == 1:
            raise RuntimeError("database unavailable")
        return [item("a")]

    notifier = RealtimeNotifier(rebuild=rebuild)
    first = notifier.subscribe(PROJECT, lambda e: None)
    second = notifier.subscribe(PROJECT, lambda e: None)

    assert first.initial_items == []
    assert [i["id"] for i in second.initial_items] == ["a"]


def test_idle_channels_are_dropped():
    notifier = RealtimeNotifier()
    subscription = notifier.subscribe(PROJECT, lambda e: None)
    notifier.track(PROJECT, item("a"))

    subscription.cancel()
    assert notifier.channel_count() == 1

    notifier.complete(PROJECT, "a")
    assert notifier.channel_count() == 0


def test_subscription_as_context_manager():
    notifier = RealtimeNotifier()

    with notifier.subscribe(PROJECT, lambda e: None):
        assert notifier.subscriber_count(PROJECT) == 1

    assert notifier.subscriber_count(PROJECT) == 0
    assert notifier.channel_count() == 0


def test_cleanup_expires_old_items():
    clock = FakeClock(1_000.0)
    notifier = RealtimeNotifier(clock=clock, max_item_age_secs=600)
    events = []
    notifier.subscribe(PROJECT, events.append)
    notifier.track(PROJECT, item("old"))
    clock.now = 1_500.0
    notifier.track(PROJECT, item("new"))

    clock.now = 1_650.0
    removed = notifier.cleanup()

    assert removed == 1
    assert [i["id"] for i in notifier.snapshot(PROJECT)] == ["new"]
    expired = events[-1]
    assert expired["type"] == PROCESSING_COMPLETED
    assert expired["outcome"] == "expired"
    assert expired["item"]["id"] == "old"


def test_cleanup_of_unsubscribed_project_drops_its_channel():
    clock = FakeClock(0.0)
    notifier = RealtimeNotifier(clock=clock)
    notifier.track(PROJECT, item("a"))

    clock.now = 10.0
    assert notifier.cleanup(PROJECT, max_age_secs=5) == 1
    assert notifier.channel_count() == 0


def test_concurrent_events_reach_every_subscriber_in_the_same_order():
    notifier = RealtimeNotifier()
    first, second = [], []
    notifier.subscribe(PROJECT, first.append)
    notifier.subscribe(PROJECT, second.append)

    def producer(prefix):
        for n in range(50):
            media_id = f"{prefix}-{n}"
            notifier.track(PROJECT, item(media_id))
            notifier.complete(PROJECT, media_id)

    threads = [threading.Thread(target=producer, args=(p,)) for p in ("a", "b", "c")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    def order(events):
        return [(e["type"], e["item"]["id"]) for e in events]

    assert len(first) == 300
    assert order(first) == order(second)
    assert notifier.snapshot(PROJECT) == []


def test_stream_yields_snapshot_then_events():
    notifier = RealtimeNotifier(rebuild=lambda project_id: [item("a", startedAt=5.0)])

    async def scenario():
        loop = asyncio.get_running_loop()
        stream = notifier.open_stream(PROJECT, loop, keepalive_secs=5)
        events = stream.events()

        snapshot = await events.__anext__()
        await loop.run_in_executor(None, notifier.track, PROJECT, item("b"))
        added = await events.__anext__()
        await events.aclose()
        return snapshot, added, stream

    snapshot, added, stream = asyncio.run(scenario())

    assert snapshot["type"] == "snapshot"
    assert [i["id"] for i in snapshot["processingItems"]] == ["a"]
    assert added["type"] == PROCESSING_ADDED
    assert added["item"]["id"] == "b"
    assert stream.closed
    assert notifier.open_stream_count() == 0
    assert notifier.subscriber_count(PROJECT) == 0


def test_stream_keepalive():
    notifier = RealtimeNotifier()

    async def scenario():
        stream = notifier.open_stream(PROJECT, asyncio.get_running_loop(), keepalive_secs=0.01)
        events = stream.events()
        await events.__anext__()
        tick = await events.__anext__()
        await events.aclose()
        return tick

    assert asyncio.run(scenario()) is None


def test_stream_limit():
    notifier = RealtimeNotifier(max_streams=1)

    async def scenario():
        loop = asyncio.get_running_loop()
        stream = notifier.open_stream(PROJECT, loop)
        with pytest.raises(StreamLimitReached):
            notifier.open_stream(PROJECT, loop)
        stream.close()
        stream.close()
        notifier.open_stream(PROJECT, loop).close()

    asyncio.run(scenario())
    assert notifier.open_stream_count() == 0


def hold_lock(channel):
    """Hold the channel lock on another thread until the returned event is set."""
    held, release = threading.Event(), threading.Event()

    def holder():
        with channel.lock:
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(5)
    return release, thread


@pytest.mark.parametrize("read", ["snapshot", "subscriber_count"])
def test_idle_channel_skipped_while_busy_is_dropped_by_the_next_read(read):
    notifier = RealtimeNotifier()
    channel = notifier._get_channel(PROJECT, create=True)

    release, thread = hold_lock(channel)
    notifier._drop_if_idle(channel)
    assert notifier.channel_count() == 1
    release.set()
    thread.join(timeout=5)

    getattr(notifier, read)(PROJECT)

    assert notifier.channel_count() == 0
    assert channel.closed


def test_read_keeps_a_channel_with_subscribers():
    notifier = RealtimeNotifier()
    notifier.subscribe(PROJECT, lambda e: None)

    assert notifier.snapshot(PROJECT) == []
    assert notifier.subscriber_count(PROJECT) == 1
    assert notifier.channel_count() == 1
