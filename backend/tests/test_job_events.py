"""Tests for the in-process job event bus."""

import asyncio

import pytest

from app.services.job_events import (
    JOB_EVENT_DELETED,
    JOB_EVENT_UPDATED,
    JobEvent,
    JobEventBus,
)


def test_listener_for_one_job_only_sees_that_job(events):
    seen = []
    events.subscribe(seen.append, job_id="a")
    events.publish(JobEvent("a", JOB_EVENT_UPDATED, progress=10))
    events.publish(JobEvent("b", JOB_EVENT_UPDATED, progress=20))
    assert [e.job_id for e in seen] == ["a"]


def test_global_listener_sees_everything_in_order(events):
    seen = []
    events.subscribe(seen.append)
    events.publish(JobEvent("a"))
    events.publish(JobEvent("b", JOB_EVENT_DELETED))
    assert [(e.job_id, e.kind) for e in seen] == [("a", "updated"), ("b", "deleted")]


def test_subscription_context_manager_unsubscribes(events):
    seen = []
    with events.subscribe(seen.append):
        assert events.subscriber_count == 1
    events.publish(JobEvent("a"))
    assert seen == []
    assert events.subscriber_count == 0


def test_failing_listener_does_not_block_others(events):
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    events.subscribe(broken)
    events.subscribe(seen.append)
    events.publish(JobEvent("a"))
    assert len(seen) == 1


def test_listener_may_unsubscribe_while_notified(events):
    seen = []
    sub = None

    def once(event):
        seen.append(event)
        sub.unsubscribe()

    sub = events.subscribe(once)
    events.publish(JobEvent("a"))
    events.publish(JobEvent("a"))
    assert len(seen) == 1


def test_events_are_not_replayed_to_late_subscribers(events):
    events.publish(JobEvent("a"))
    seen = []
    events.subscribe(seen.append)
    assert seen == []


def test_payload_is_camel_case():
    assert JobEvent("a", status="processing", progress=40).to_payload() == {
        "jobId": "a",
        "kind": "updated",
        "status": "processing",
        "progress": 40,
    }
    assert JobEvent("a", JOB_EVENT_DELETED).to_payload() == {"jobId": "a", "kind": "deleted"}


@pytest.mark.asyncio
async def test_stream_yields_published_events():
    bus = JobEventBus()
    stream = bus.stream("a")
    first = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    bus.publish(JobEvent("b"))
    bus.publish(JobEvent("a", progress=50))

    event = await asyncio.wait_for(first, timeout=1)
    assert event.job_id == "a"
    assert event.progress == 50

    await stream.aclose()
    assert bus.subscriber_count == 0
