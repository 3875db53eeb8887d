"""Booking engine: turning slots into appointments and driving their status."""
import asyncio
from datetime import datetime, time

import pytest

from app.core.errors import (
    AppointmentNotFound,
    ConflictError,
    ForbiddenError,
    InvalidTransition,
    SlotBooked,
    SlotNotFound,
    TransientStoreError,
    ValidationError,
)
from app.models.appointment import AppointmentStatus
from app.models.user import SCHEDULER_IDENTITY, SCHEDULER_USER_ID, UserUpdate
from app.services import appointment_service, auth_service, booking_service, slot_service


class FailingAppointmentStore:
    """Delegates to a real store but refuses to record appointments."""

    def __init__(self, inner) -> None:
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def insert_appointment(self, appointment, change):
        raise TransientStoreError("Database unavailable: connection reset")


class LostAckStore(FailingAppointmentStore):
    """Records the appointment, then reports the write as failed."""

    async def insert_appointment(self, appointment, change):
        await self._inner.insert_appointment(appointment, change)
        raise TransientStoreError("Database unavailable: connection reset")


class BlindStore(FailingAppointmentStore):
    """Fails the insert and every appointment lookup after it."""

    async def get_appointment(self, appointment_id):
        raise TransientStoreError("Database unavailable: connection reset")


class TestBook:
    async def test_book_open_slot(self, store, provider, patient, slot_day, nine, sink):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        appointment = await booking_service.book(store, slot.id, patient.id, sinks=[sink])

        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.slot_id == slot.id
        assert appointment.provider_name == "Dr. Gregory House"
        assert appointment.patient_name == "Jane Doe"
        assert appointment.patient_age == 34
        assert appointment.patient_gender == "female"
        assert appointment.specialty == "cardiology"
        assert (appointment.date, appointment.time) == (slot_day, nine)
        assert (await store.get_slot(slot.id)).booked is True
        assert sink.kinds == ["slot.booked", "appointment.created"]

    async def test_booked_slot_rejected(self, store, provider, patient, other_patient, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        await booking_service.book(store, slot.id, patient.id)

        with pytest.raises(SlotBooked):
            await booking_service.book(store, slot.id, other_patient.id)
        assert len(await store.query_appointments()) == 1

    async def test_unknown_slot(self, store, patient):
        with pytest.raises(SlotNotFound):
            await booking_service.book(store, "missing", patient.id)

    async def test_provider_can_not_book(self, store, provider, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        with pytest.raises(ForbiddenError):
            await booking_service.book(store, slot.id, provider.id)
        assert (await store.get_slot(slot.id)).booked is False

    async def test_idempotent_replay(self, store, provider, patient, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        first = await booking_service.book(store, slot.id, patient.id, idempotency_key="req-1")
        second = await booking_service.book(store, slot.id, patient.id, idempotency_key="req-1")

        assert first.id == second.id
        assert len(await store.query_appointments()) == 1

    async def test_idempotency_key_reused_for_other_slot(self, store, provider, patient, slot_day):
        a = await slot_service.publish_slot(store, provider.id, slot_day, time(9, 0))
        b = await slot_service.publish_slot(store, provider.id, slot_day, time(10, 0))
        await booking_service.book(store, a.id, patient.id, idempotency_key="req-1")

        with pytest.raises(ConflictError):
            await booking_service.book(store, b.id, patient.id, idempotency_key="req-1")
        assert (await store.get_slot(b.id)).booked is False

    async def test_snapshot_survives_profile_edits(self, store, provider, patient, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        appointment = await booking_service.book(store, slot.id, patient.id)

        await auth_service.update_profile(
            store, provider.id, UserUpdate(display_name="Dr. G. House", specialty="nephrology")
        )
        await auth_service.update_profile(store, patient.id, UserUpdate(display_name="Jane Roe"))

        stored = await appointment_service.get_appointment(store, appointment.id)
        assert stored.provider_name == "Dr. Gregory House"
        assert stored.specialty == "cardiology"
        assert stored.patient_name == "Jane Doe"

    async def test_failed_insert_releases_slot(self, store, provider, patient, slot_day, nine, sink):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        failing = FailingAppointmentStore(store)

        with pytest.raises(TransientStoreError) as excinfo:
            await booking_service.book(failing, slot.id, patient.id, sinks=[sink])

        assert excinfo.value.retryable is True
        assert (await store.get_slot(slot.id)).booked is False
        assert await store.query_appointments() == []
        assert sink.kinds == ["slot.booked", "slot.released"]
        # the slot is bookable again
        appointment = await booking_service.book(store, slot.id, patient.id)
        assert appointment.slot_id == slot.id

    async def test_stored_appointment_survives_a_lost_ack(
        self, store, provider, patient, other_patient, slot_day, nine, sink
    ):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        appointment = await booking_service.book(LostAckStore(store), slot.id, patient.id, sinks=[sink])

        assert appointment.patient_id == patient.id
        assert (await store.get_slot(slot.id)).booked is True
        assert sink.kinds == ["slot.booked", "appointment.created"]
        with pytest.raises(SlotBooked):
            await booking_service.book(store, slot.id, other_patient.id)
        assert [a.id for a in await store.query_appointments(provider_id=provider.id)] == [appointment.id]

    async def test_unverifiable_insert_keeps_slot_booked(self, store, provider, patient, slot_day, nine, sink):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        with pytest.raises(TransientStoreError):
            await booking_service.book(BlindStore(store), slot.id, patient.id, sinks=[sink])

        assert (await store.get_slot(slot.id)).booked is True
        assert sink.kinds == ["slot.booked"]


class TestConcurrentBooking:
    async def test_one_winner_per_slot(self, store, provider_with_slot, make_patients):
        provider, slot = provider_with_slot
        patients = await make_patients(5)

        results = await asyncio.gather(
            *(booking_service.book(store, slot.id, p.id) for p in patients),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, SlotBooked) for e in losers)
        assert len(await store.query_appointments(provider_id=provider.id)) == 1
        assert (await store.get_slot(slot.id)).booked is True

    async def test_confirm_and_decline_race(self, store, provider_with_slot, make_patients):
        provider, slot = provider_with_slot
        (patient,) = await make_patients(1)
        appointment = await booking_service.book(store, slot.id, patient.id)

        results = await asyncio.gather(
            booking_service.set_status(store, appointment.id, "confirmed", provider.identity),
            booking_service.set_status(store, appointment.id, "declined", provider.identity),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InvalidTransition)) == 1
        history = await appointment_service.status_history(store, appointment.id)
        assert len(history) == 2


class TestSetStatus:
    async def _booked(self, store, provider, patient, slot_day, slot_time=time(9, 0)):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, slot_time)
        return slot, await booking_service.book(store, slot.id, patient.id)

    async def test_confirm(self, store, provider, patient, slot_day, sink):
        slot, appointment = await self._booked(store, provider, patient, slot_day)

        updated = await booking_service.set_status(
            store, appointment.id, AppointmentStatus.CONFIRMED, provider.identity, sinks=[sink]
        )

        assert updated.status == AppointmentStatus.CONFIRMED
        assert updated.updated_at > appointment.updated_at
        assert (await store.get_slot(slot.id)).booked is True
        assert sink.kinds == ["appointment.status_changed"]

    async def test_decline_releases_slot(self, store, provider, patient, other_patient, slot_day, sink):
        slot, appointment = await self._booked(store, provider, patient, slot_day)

        updated = await booking_service.set_status(
            store, appointment.id, "declined", provider.identity, sinks=[sink]
        )

        assert updated.status == AppointmentStatus.DECLINED
        assert (await store.get_slot(slot.id)).booked is False
        assert sink.kinds == ["appointment.status_changed", "slot.released"]
        rebooked = await booking_service.book(store, slot.id, other_patient.id)
        assert rebooked.patient_id == other_patient.id

    async def test_decline_drops_slot_republished_meanwhile(self, store, provider, patient, slot_day, nine):
        slot, appointment = await self._booked(store, provider, patient, slot_day, nine)
        newer = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        await booking_service.set_status(store, appointment.id, "declined", provider.identity)

        open_slots = await slot_service.list_open_slots(store, provider.id)
        assert [s.id for s in open_slots] == [newer.id]
        assert (await appointment_service.get_appointment(store, appointment.id)).slot_id == slot.id

    async def test_patient_can_not_change_status(self, store, provider, patient, slot_day):
        _, appointment = await self._booked(store, provider, patient, slot_day)
        with pytest.raises(ForbiddenError):
            await booking_service.set_status(store, appointment.id, "confirmed", patient.identity)

    async def test_other_provider_can_not_change_status(self, store, provider, other_provider, patient, slot_day):
        _, appointment = await self._booked(store, provider, patient, slot_day)
        with pytest.raises(ForbiddenError):
            await booking_service.set_status(store, appointment.id, "confirmed", other_provider.identity)

    async def test_scheduler_can_only_complete(self, store, provider, patient, slot_day):
        _, appointment = await self._booked(store, provider, patient, slot_day)
        with pytest.raises(ForbiddenError):
            await booking_service.set_status(store, appointment.id, "confirmed", SCHEDULER_IDENTITY)

    @pytest.mark.parametrize(
        "path, rejected",
        [
            ([], "completed"),
            ([], "pending"),
            (["confirmed"], "declined"),
            (["confirmed"], "pending"),
            (["declined"], "confirmed"),
            (["confirmed", "completed"], "confirmed"),
        ],
    )
    async def test_rejected_transitions(self, store, provider, patient, slot_day, path, rejected):
        _, appointment = await self._booked(store, provider, patient, slot_day)
        for step in path:
            await booking_service.set_status(store, appointment.id, step, provider.identity)

        with pytest.raises(InvalidTransition):
            await booking_service.set_status(store, appointment.id, rejected, provider.identity)

    async def test_unknown_status(self, store, provider, patient, slot_day):
        _, appointment = await self._booked(store, provider, patient, slot_day)
        with pytest.raises(ValidationError):
            await booking_service.set_status(store, appointment.id, "cancelled", provider.identity)

    async def test_unknown_appointment(self, store, provider):
        with pytest.raises(AppointmentNotFound):
            await booking_service.set_status(store, "missing", "confirmed", provider.identity)

    async def test_history_records_every_change(self, store, provider, patient, slot_day):
        _, appointment = await self._booked(store, provider, patient, slot_day)
        await booking_service.set_status(store, appointment.id, "confirmed", provider.identity)
        await booking_service.set_status(store, appointment.id, "completed", provider.identity)

        history = await appointment_service.status_history(store, appointment.id)

        assert [(h.from_status, h.to_status) for h in history] == [
            (None, "pending"),
            ("pending", "confirmed"),
            ("confirmed", "completed"),
        ]
        assert history[0].changed_by == patient.id
        assert history[1].changed_by == provider.id
        stamps = [h.changed_at for h in history]
        assert stamps == sorted(stamps) and len(set(stamps)) == 3


class TestCompletionSweep:
    async def test_completes_confirmed_past_grace(self, store, provider, patient, slot_day, sink):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, time(9, 0))
        later = await slot_service.publish_slot(store, provider.id, slot_day, time(15, 0))
        pending_slot = await slot_service.publish_slot(store, provider.id, slot_day, time(8, 0))
        due = await booking_service.book(store, slot.id, patient.id)
        not_yet = await booking_service.book(store, later.id, patient.id)
        pending = await booking_service.book(store, pending_slot.id, patient.id)
        for a in (due, not_yet):
            await booking_service.set_status(store, a.id, "confirmed", provider.identity)

        completed = await booking_service.complete_due_appointments(
            store, grace_minutes=60, now=datetime.combine(slot_day, time(11, 0)), sinks=[sink]
        )

        assert [a.id for a in completed] == [due.id]
        assert (await appointment_service.get_appointment(store, not_yet.id)).status == "confirmed"
        assert (await appointment_service.get_appointment(store, pending.id)).status == "pending"
        history = await appointment_service.status_history(store, due.id)
        assert history[-1].changed_by == SCHEDULER_USER_ID
        assert sink.kinds == ["appointment.status_changed"]

    async def test_nothing_due(self, store, provider, patient, slot_day):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, time(9, 0))
        a = await booking_service.book(store, slot.id, patient.id)
        await booking_service.set_status(store, a.id, "confirmed", provider.identity)

        completed = await booking_service.complete_due_appointments(
            store, grace_minutes=60, now=datetime.combine(slot_day, time(9, 30))
        )

        assert completed == []
