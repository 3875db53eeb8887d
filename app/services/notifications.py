"""Change events, notification sinks and live subscriptions.

Sinks are fire-and-forget: ``dispatch`` hands an event to every sink and
logs (never raises) when one of them fails, so a broken sink can not undo
a write that already succeeded.

``ChangeFeed`` is the sink behind live queries. Each subscriber gets a
``Subscription`` with its own FIFO queue and filter predicate; events for
one entity reach a subscriber in the order they were published.
"""
import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from app.models.appointment import Appointment, AppointmentPublic
from app.models.slot import Slot, SlotPublic
from app.models.user import Identity

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    APPOINTMENT_CREATED = "appointment.created"
    STATUS_CHANGED = "appointment.status_changed"
    SLOT_PUBLISHED = "slot.published"
    SLOT_WITHDRAWN = "slot.withdrawn"
    SLOT_BOOKED = "slot.booked"
    SLOT_RELEASED = "slot.released"
    USER_REGISTERED = "user.registered"
    USER_SIGNED_IN = "user.signed_in"
    USER_SIGNED_OUT = "user.signed_out"


class ChangeEvent(BaseModel):
    kind: EventKind
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC).replace(tzinfo=None))
    appointment: AppointmentPublic | None = None
    slot: SlotPublic | None = None
    identity: Identity | None = None

    @classmethod
    def for_appointment(cls, kind: EventKind, appointment: Appointment) -> "ChangeEvent":
        return cls(kind=kind, appointment=AppointmentPublic.model_validate(appointment.model_dump()))

    @classmethod
    def for_slot(cls, kind: EventKind, slot: Slot) -> "ChangeEvent":
        return cls(kind=kind, slot=SlotPublic.model_validate(slot.model_dump()))

    @classmethod
    def for_identity(cls, kind: EventKind, identity: Identity) -> "ChangeEvent":
        return cls(kind=kind, identity=identity)

    def concerns(self, user_id: str) -> bool:
        """True if the event is about this user's appointments, slots or account."""
        if self.appointment is not None:
            return user_id in (self.appointment.patient_id, self.appointment.provider_id)
        if self.slot is not None:
            return self.slot.provider_id == user_id
        if self.identity is not None:
            return self.identity.user_id == user_id
        return False


class NotificationSink(Protocol):
    def notify(self, event: ChangeEvent) -> None: ...


def dispatch(sinks: Iterable[NotificationSink], event: ChangeEvent) -> None:
    """Deliver to every sink, best effort."""
    for sink in sinks:
        try:
            sink.notify(event)
        except Exception as e:
            logger.exception("Notification sink %s failed for %s: %s", type(sink).__name__, event.kind.value, e)


class LoggingNotificationSink:
    def notify(self, event: ChangeEvent) -> None:
        if event.appointment is not None:
            logger.info(
                "%s appointment=%s status=%s",
                event.kind.value,
                event.appointment.id,
                event.appointment.status.value,
            )
        elif event.slot is not None:
            logger.info("%s slot=%s booked=%s", event.kind.value, event.slot.id, event.slot.booked)
        else:
            logger.info("%s user=%s", event.kind.value, event.identity.user_id if event.identity else None)


EventFilter = Callable[[ChangeEvent], bool]


class Subscription:
    """Cancellable handle over a queue of matching events.

    ``cancel`` puts ``None`` on the queue so a consumer blocked in ``get``
    or ``async for`` wakes up and finishes.
    """

    def __init__(self, feed: "ChangeFeed", predicate: EventFilter, max_queue: int) -> None:
        self._feed = feed
        self.predicate = predicate
        self.queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=max_queue)
        self.cancelled = False
        self.dropped = 0

    def offer(self, event: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Subscriber queue full, dropping %s", event.kind.value)

    async def _next(self) -> ChangeEvent | None:
        if self.cancelled and self.queue.empty():
            return None
        return await self.queue.get()

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Next event, or None once the subscription is cancelled and drained."""
        if timeout is None:
            return await self._next()
        return await asyncio.wait_for(self._next(), timeout)

    def cancel(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            self._feed._remove(self)
            # A full queue has no blocked consumer; draining it ends iteration
            with contextlib.suppress(asyncio.QueueFull):
                self.queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._next()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class ChangeFeed:
    def __init__(self, max_queue: int = 1000) -> None:
        self._subscriptions: list[Subscription] = []
        self._max_queue = max_queue

    def subscribe(self, predicate: EventFilter | None = None) -> Subscription:
        sub = Subscription(self, predicate or (lambda event: True), self._max_queue)
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def notify(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions):
            try:
                matches = sub.predicate(event)
            except Exception:
                logger.exception("Subscription filter failed for %s", event.kind.value)
                continue
            if matches:
                sub.offer(event)


def for_user(user_id: str) -> EventFilter:
    return lambda event: event.concerns(user_id)


def for_patient(patient_id: str) -> EventFilter:
    return lambda event: event.appointment is not None and event.appointment.patient_id == patient_id


def for_provider(provider_id: str) -> EventFilter:
    def _match(event: ChangeEvent) -> bool:
        if event.appointment is not None:
            return event.appointment.provider_id == provider_id
        return event.slot is not None and event.slot.provider_id == provider_id

    return _match
