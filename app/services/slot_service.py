import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta

from app.core.config import settings
from app.core.errors import (
    AlreadyBooked,
    DuplicateSlot,
    ForbiddenError,
    InvalidDate,
    NotOwner,
    SlotBooked,
    SlotNotFound,
    ValidationError,
)
from app.core.persistence import PersistenceProvider
from app.models.slot import OpenSlotPublic, Slot
from app.models.user import Role
from app.services.notifications import ChangeEvent, EventKind, NotificationSink, dispatch

logger = logging.getLogger(__name__)


def _utc_naive_now() -> datetime:
    """Naive UTC for comparison with TIMESTAMP WITHOUT TIME ZONE."""
    return datetime.now(UTC).replace(tzinfo=None)


async def publish_slot(
    store: PersistenceProvider,
    provider_id: str,
    slot_date: date,
    slot_time: time,
    *,
    now: datetime | None = None,
    sinks: Iterable[NotificationSink] = (),
) -> Slot:
    now = now or _utc_naive_now()
    if datetime.combine(slot_date, slot_time) < now:
        raise InvalidDate(f"Slot {slot_date.isoformat()} {slot_time.strftime('%H:%M')} is in the past")
    provider = await store.get_user(provider_id)
    if provider is None or provider.role != Role.PROVIDER:
        raise ForbiddenError("Only providers can publish slots")
    # Seconds are not part of a slot's identity
    slot_time = slot_time.replace(second=0, microsecond=0)
    slot = Slot(provider_id=provider_id, date=slot_date, time=slot_time, booked=False)
    try:
        slot = await store.insert_slot(slot)
    except DuplicateSlot:
        raise DuplicateSlot(
            f"An open slot already exists on {slot_date.isoformat()} at {slot_time.strftime('%H:%M')}"
        ) from None
    logger.info("Provider %s published slot %s (%s %s)", provider_id, slot.id, slot.date, slot.time)
    dispatch(sinks, ChangeEvent.for_slot(EventKind.SLOT_PUBLISHED, slot))
    return slot


async def withdraw_slot(
    store: PersistenceProvider,
    slot_id: str,
    requester_id: str,
    *,
    now: datetime | None = None,
    sinks: Iterable[NotificationSink] = (),
) -> None:
    slot = await store.get_slot(slot_id)
    if slot is None:
        raise SlotNotFound()
    if slot.provider_id != requester_id:
        raise NotOwner()
    if slot.booked:
        raise SlotBooked("Booked slots can not be withdrawn")
    min_notice = settings.slot_withdraw_min_notice_minutes
    if min_notice > 0:
        now = now or _utc_naive_now()
        if slot.starts_at - now < timedelta(minutes=min_notice):
            raise ValidationError(f"Slots can only be withdrawn at least {min_notice} minutes in advance")
    # Conditional delete: a booking that lands in between wins
    if not await store.delete_slot(slot_id, only_open=True):
        raise SlotBooked("Booked slots can not be withdrawn")
    logger.info("Provider %s withdrew slot %s", requester_id, slot_id)
    dispatch(sinks, ChangeEvent.for_slot(EventKind.SLOT_WITHDRAWN, slot))


async def list_open_slots(store: PersistenceProvider, provider_id: str | None = None) -> list[Slot]:
    return await store.query_slots(provider_id=provider_id, booked=False)


async def list_provider_slots(store: PersistenceProvider, provider_id: str) -> list[Slot]:
    return await store.query_slots(provider_id=provider_id)


async def list_open_slots_with_providers(
    store: PersistenceProvider, provider_id: str | None = None
) -> list[OpenSlotPublic]:
    """Open slots with the provider's name and specialty, for the booking page."""
    slots = await list_open_slots(store, provider_id)
    providers: dict[str, tuple[str, str]] = {}
    out: list[OpenSlotPublic] = []
    for slot in slots:
        if slot.provider_id not in providers:
            provider = await store.get_user(slot.provider_id)
            if provider is None:
                providers[slot.provider_id] = ("Unknown Provider", "general")
            else:
                providers[slot.provider_id] = (provider.display_name, provider.specialty or "general")
        name, specialty = providers[slot.provider_id]
        out.append(
            OpenSlotPublic(
                id=slot.id,
                provider_id=slot.provider_id,
                date=slot.date,
                time=slot.time,
                booked=slot.booked,
                provider_name=name,
                specialty=specialty,
            )
        )
    return out


async def mark_booked(store: PersistenceProvider, slot_id: str) -> None:
    """Flip booked false -> true with a single conditional write."""
    if await store.set_slot_booked(slot_id, expected=False, booked=True):
        return
    if await store.get_slot(slot_id) is None:
        raise SlotNotFound()
    raise AlreadyBooked()


async def mark_released(store: PersistenceProvider, slot_id: str) -> None:
    """Flip booked true -> false. Drops the slot if an identical open one was published meanwhile."""
    try:
        released = await store.set_slot_booked(slot_id, expected=True, booked=False)
    except DuplicateSlot:
        logger.info("Dropping released slot %s: an identical open slot exists", slot_id)
        await store.delete_slot(slot_id, only_open=False)
        return
    if not released and await store.get_slot(slot_id) is None:
        raise SlotNotFound()
