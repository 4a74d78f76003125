"""In-process "job changed" notifications.

Publishers (job service, watchers) call ``publish``; listeners subscribe
either to one job id or to every job. Delivery is synchronous, in
subscription order, with no persistence: a listener that subscribes after an
event was published never sees it and should read current state instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)

JOB_EVENT_CREATED = "created"
JOB_EVENT_UPDATED = "updated"
JOB_EVENT_DELETED = "deleted"
JOB_EVENT_FAILED = "failed"


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    kind: str = JOB_EVENT_UPDATED
    status: str | None = None
    progress: int | None = None

    def to_payload(self) -> dict:
        """camelCase body used on the SSE stream."""
        payload: dict = {"jobId": self.job_id, "kind": self.kind}
        if self.status is not None:
            payload["status"] = self.status
        if self.progress is not None:
            payload["progress"] = self.progress
        return payload


JobListener = Callable[[JobEvent], None]


class Subscription:
    """Handle returned by ``JobEventBus.subscribe``.

    Usable as a context manager so the listener lives exactly as long as the
    ``with`` block.
    """

    def __init__(self, bus: "JobEventBus", listener: JobListener, job_id: str | None) -> None:
        self._bus = bus
        self.listener = listener
        self.job_id = job_id
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class JobEventBus:
    """Typed publish/subscribe channel keyed by job id."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, listener: JobListener, job_id: str | None = None) -> Subscription:
        """Register ``listener`` for events of ``job_id`` (all jobs when None)."""
        sub = Subscription(self, listener, job_id)
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: JobEvent) -> None:
        # Snapshot: listeners may unsubscribe while being notified
        for sub in list(self._subscriptions):
            if sub.job_id is not None and sub.job_id != event.job_id:
                continue
            try:
                sub.listener(event)
            except Exception:
                logger.exception(
                    "Job event listener failed",
                    extra={"job_id": event.job_id, "event_kind": event.kind},
                )

    async def stream(
        self, job_id: str | None = None, max_queued: int = 100
    ) -> AsyncIterator[JobEvent]:
        """Yield events as they are published until the consumer stops.

        When the consumer falls more than ``max_queued`` events behind, the
        newest events are dropped; consumers re-read state on every event so
        a gap only delays the refresh.
        """
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=max_queued)

        def _enqueue(event: JobEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping job event for slow stream consumer",
                    extra={"job_id": event.job_id},
                )

        with self.subscribe(_enqueue, job_id):
            while True:
                yield await queue.get()


_event_bus: JobEventBus | None = None


def get_event_bus() -> JobEventBus:
    """Return the process-wide JobEventBus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = JobEventBus()
    return _event_bus
