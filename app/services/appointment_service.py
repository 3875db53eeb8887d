import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta

from app.core.errors import AppointmentNotFound, ForbiddenError, InvalidTransition
from app.core.persistence import PersistenceProvider
from app.models.appointment import Appointment, AppointmentStatus, AppointmentStatusChange
from app.models.user import Identity, Role
from app.services.notifications import ChangeEvent, EventKind, NotificationSink, dispatch

logger = logging.getLogger(__name__)


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def next_timestamp(previous: datetime) -> datetime:
    """Now, but strictly after ``previous`` so updated_at never goes backwards."""
    now = _utc_naive_now()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


async def list_by_patient(store: PersistenceProvider, patient_id: str) -> list[Appointment]:
    return await store.query_appointments(patient_id=patient_id)


async def list_by_provider(store: PersistenceProvider, provider_id: str) -> list[Appointment]:
    return await store.query_appointments(provider_id=provider_id)


async def list_for_identity(store: PersistenceProvider, identity: Identity) -> list[Appointment]:
    if identity.role == Role.PROVIDER:
        return await list_by_provider(store, identity.user_id)
    return await list_by_patient(store, identity.user_id)


async def get_appointment(store: PersistenceProvider, appointment_id: str) -> Appointment:
    appointment = await store.get_appointment(appointment_id)
    if appointment is None:
        raise AppointmentNotFound()
    return appointment


async def get_for_participant(
    store: PersistenceProvider, appointment_id: str, identity: Identity
) -> Appointment:
    appointment = await get_appointment(store, appointment_id)
    if identity.user_id not in (appointment.patient_id, appointment.provider_id):
        raise ForbiddenError("Not a participant of this appointment")
    return appointment


async def status_history(store: PersistenceProvider, appointment_id: str) -> list[AppointmentStatusChange]:
    await get_appointment(store, appointment_id)
    return await store.list_status_changes(appointment_id)


async def create_appointment(
    store: PersistenceProvider,
    appointment: Appointment,
    created_by: str,
    sinks: Iterable[NotificationSink] = (),
) -> Appointment:
    change = AppointmentStatusChange(
        appointment_id=appointment.id,
        from_status=None,
        to_status=appointment.status,
        changed_by=created_by,
        changed_at=appointment.created_at,
    )
    appointment = await store.insert_appointment(appointment, change)
    logger.info(
        "Appointment %s created: patient=%s provider=%s %s %s",
        appointment.id,
        appointment.patient_id,
        appointment.provider_id,
        appointment.date,
        appointment.time,
    )
    dispatch(sinks, ChangeEvent.for_appointment(EventKind.APPOINTMENT_CREATED, appointment))
    return appointment


async def apply_status(
    store: PersistenceProvider,
    appointment: Appointment,
    new_status: AppointmentStatus,
    changed_by: str,
    *,
    release_slot: bool = False,
    sinks: Iterable[NotificationSink] = (),
) -> Appointment:
    """Compare-and-swap the status from the value read in ``appointment``."""
    changed_at = next_timestamp(appointment.updated_at)
    change = AppointmentStatusChange(
        appointment_id=appointment.id,
        from_status=appointment.status,
        to_status=new_status.value,
        changed_by=changed_by,
        changed_at=changed_at,
    )
    updated = await store.transition_appointment(
        appointment.id,
        expected_status=appointment.status,
        change=change,
        updated_at=changed_at,
        release_slot=release_slot,
    )
    if updated is None:
        current = await get_appointment(store, appointment.id)
        raise InvalidTransition(
            f"Appointment moved to {current.status} concurrently; can not go from {appointment.status} to {new_status.value}"
        )
    logger.info("Appointment %s: %s -> %s by %s", updated.id, appointment.status, updated.status, changed_by)
    dispatch(sinks, ChangeEvent.for_appointment(EventKind.STATUS_CHANGED, updated))
    return updated


async def provider_summary(store: PersistenceProvider, provider_id: str, *, today: date | None = None) -> dict[str, int]:
    """Dashboard counters for a provider."""
    today = today or _utc_naive_now().date()
    week_end = today + timedelta(days=7)
    appointments = await list_by_provider(store, provider_id)
    confirmed = [a for a in appointments if a.status == AppointmentStatus.CONFIRMED]
    return {
        "pending": sum(1 for a in appointments if a.status == AppointmentStatus.PENDING),
        "confirmed_today": sum(1 for a in confirmed if a.date == today),
        "confirmed_this_week": sum(1 for a in confirmed if today <= a.date <= week_end),
        "total_patients": len({a.patient_id for a in appointments}),
    }
