"""Booking engine: the only path by which a slot becomes an appointment.

``book`` flips the slot's booked flag with a conditional write first, so at
most one caller can win a slot no matter how many processes race for it,
then records the appointment. If recording fails and the appointment is
not in the store, the slot is released again before the error reaches the
caller; when the store cannot tell, the slot stays booked.
"""
import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from app.core.errors import (
    AlreadyBooked,
    ConflictError,
    ForbiddenError,
    InvalidTransition,
    SchedulingError,
    SlotBooked,
    SlotNotFound,
    UserNotFound,
    ValidationError,
)
from app.core.persistence import PersistenceProvider
from app.models.appointment import ALLOWED_TRANSITIONS, Appointment, AppointmentStatus
from app.models.slot import Slot
from app.models.user import SCHEDULER_IDENTITY, Identity, Role
from app.services import appointment_service, slot_service
from app.services.notifications import ChangeEvent, EventKind, NotificationSink, dispatch

logger = logging.getLogger(__name__)


def _utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


async def book(
    store: PersistenceProvider,
    slot_id: str,
    patient_id: str,
    *,
    idempotency_key: str | None = None,
    sinks: Iterable[NotificationSink] = (),
) -> Appointment:
    sinks = tuple(sinks)
    if idempotency_key:
        existing = await store.find_appointment_by_idempotency_key(patient_id, idempotency_key)
        if existing is not None:
            if existing.slot_id != slot_id:
                raise ConflictError("Idempotency key already used for another slot")
            logger.info("Replaying booking %s for idempotency key %s", existing.id, idempotency_key)
            return existing

    slot = await store.get_slot(slot_id)
    if slot is None:
        raise SlotNotFound()
    if slot.booked:
        raise SlotBooked()
    patient = await store.get_user(patient_id)
    if patient is None:
        raise UserNotFound("Patient not found")
    if patient.role != Role.PATIENT:
        raise ForbiddenError("Only patients can book appointments")
    provider = await store.get_user(slot.provider_id)
    if provider is None:
        raise UserNotFound("Provider not found")

    try:
        await slot_service.mark_booked(store, slot_id)
    except AlreadyBooked:
        raise SlotBooked("Slot was just booked by someone else") from None
    slot.booked = True
    dispatch(sinks, ChangeEvent.for_slot(EventKind.SLOT_BOOKED, slot))

    appointment = Appointment(
        slot_id=slot.id,
        provider_id=provider.id,
        patient_id=patient.id,
        provider_name=provider.display_name,
        patient_name=patient.display_name,
        patient_age=patient.age,
        patient_gender=patient.gender,
        specialty=provider.specialty or "general",
        date=slot.date,
        time=slot.time,
        status=AppointmentStatus.PENDING.value,
        idempotency_key=idempotency_key,
    )
    try:
        return await appointment_service.create_appointment(store, appointment, patient.id, sinks)
    except Exception as exc:
        # The insert may have committed before the error surfaced; release only when it did not
        try:
            recorded = await store.get_appointment(appointment.id)
        except SchedulingError as lookup_error:
            logger.error(
                "Could not verify appointment %s after failed insert (%s); slot %s stays booked",
                appointment.id,
                lookup_error,
                slot.id,
            )
            raise exc from lookup_error
        if recorded is not None:
            logger.warning("Appointment %s was stored despite insert error: %s", recorded.id, exc)
            dispatch(sinks, ChangeEvent.for_appointment(EventKind.APPOINTMENT_CREATED, recorded))
            return recorded
        await _compensate_booking(store, slot, sinks)
        raise


async def _compensate_booking(
    store: PersistenceProvider, slot: Slot, sinks: Iterable[NotificationSink]
) -> None:
    try:
        await slot_service.mark_released(store, slot.id)
    except SchedulingError as e:
        # Leaves the slot booked without an appointment; needs manual release
        logger.critical("Compensating release of slot %s failed: %s", slot.id, e)
        return
    logger.warning("Booking of slot %s failed after marking it booked; slot released", slot.id)
    slot.booked = False
    dispatch(sinks, ChangeEvent.for_slot(EventKind.SLOT_RELEASED, slot))


def _authorize(appointment: Appointment, new_status: AppointmentStatus, requester: Identity) -> None:
    is_owner = requester.role == Role.PROVIDER and requester.user_id == appointment.provider_id
    if new_status == AppointmentStatus.COMPLETED:
        if not (is_owner or requester.role == Role.SCHEDULER):
            raise ForbiddenError("Only the provider or the scheduler can complete an appointment")
    elif not is_owner:
        raise ForbiddenError("Only the appointment's provider can change its status")


async def set_status(
    store: PersistenceProvider,
    appointment_id: str,
    new_status: AppointmentStatus | str,
    requester: Identity,
    *,
    sinks: Iterable[NotificationSink] = (),
) -> Appointment:
    try:
        new_status = AppointmentStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown status: {new_status}") from None
    sinks = tuple(sinks)
    appointment = await appointment_service.get_appointment(store, appointment_id)
    _authorize(appointment, new_status, requester)
    current = AppointmentStatus(appointment.status)
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"Can not go from {current.value} to {new_status.value}")
    release = new_status == AppointmentStatus.DECLINED
    updated = await appointment_service.apply_status(
        store, appointment, new_status, requester.user_id, release_slot=release, sinks=sinks
    )
    if release and sinks:
        # The decline is committed; the slot event is notification only
        try:
            slot = await store.get_slot(updated.slot_id)
        except SchedulingError as e:
            logger.warning("Could not load released slot %s for notification: %s", updated.slot_id, e)
            slot = None
        if slot is not None:
            dispatch(sinks, ChangeEvent.for_slot(EventKind.SLOT_RELEASED, slot))
    return updated


async def complete_due_appointments(
    store: PersistenceProvider,
    *,
    grace_minutes: int,
    now: datetime | None = None,
    sinks: Iterable[NotificationSink] = (),
) -> list[Appointment]:
    """Complete confirmed appointments whose start + grace has passed."""
    now = now or _utc_naive_now()
    cutoff = now - timedelta(minutes=grace_minutes)
    completed: list[Appointment] = []
    for appointment in await store.query_appointments(status=AppointmentStatus.CONFIRMED.value):
        if appointment.starts_at > cutoff:
            continue
        try:
            completed.append(
                await set_status(
                    store, appointment.id, AppointmentStatus.COMPLETED, SCHEDULER_IDENTITY, sinks=sinks
                )
            )
        except InvalidTransition:
            # completed by the provider in the meantime
            continue
    if completed:
        logger.info("Completion sweep: completed %d appointment(s)", len(completed))
    return completed
