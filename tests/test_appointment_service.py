"""Appointment registry: listings, access checks and the provider dashboard."""
from datetime import datetime, time, timedelta

import pytest

from app.core.errors import AppointmentNotFound, ForbiddenError
from app.services import appointment_service, auth_service, booking_service, slot_service
from app.services.seed_service import SAMPLE_PASSWORD, seed_sample_data


async def _book(store, provider, patient, day, at):
    slot = await slot_service.publish_slot(store, provider.id, day, at)
    return await booking_service.book(store, slot.id, patient.id)


class TestListing:
    async def test_newest_date_first(self, store, provider, patient, slot_day):
        early = await _book(store, provider, patient, slot_day, time(9, 0))
        late = await _book(store, provider, patient, slot_day, time(15, 0))
        next_day = await _book(store, provider, patient, slot_day + timedelta(days=1), time(8, 0))

        listed = await appointment_service.list_by_patient(store, patient.id)

        assert [a.id for a in listed] == [next_day.id, late.id, early.id]

    async def test_each_side_sees_its_own(self, store, provider, other_provider, patient, other_patient, slot_day):
        mine = await _book(store, provider, patient, slot_day, time(9, 0))
        await _book(store, other_provider, other_patient, slot_day, time(9, 0))

        assert [a.id for a in await appointment_service.list_for_identity(store, patient.identity)] == [mine.id]
        assert [a.id for a in await appointment_service.list_for_identity(store, provider.identity)] == [mine.id]
        assert len(await appointment_service.list_by_provider(store, other_provider.id)) == 1

    async def test_list_empty(self, store, patient):
        assert await appointment_service.list_by_patient(store, patient.id) == []


class TestAccess:
    async def test_participants_can_read(self, store, provider, patient, slot_day, nine):
        appointment = await _book(store, provider, patient, slot_day, nine)

        for identity in (patient.identity, provider.identity):
            found = await appointment_service.get_for_participant(store, appointment.id, identity)
            assert found.id == appointment.id

    async def test_outsiders_can_not_read(self, store, provider, patient, other_patient, slot_day, nine):
        appointment = await _book(store, provider, patient, slot_day, nine)
        with pytest.raises(ForbiddenError):
            await appointment_service.get_for_participant(store, appointment.id, other_patient.identity)

    async def test_unknown_appointment(self, store):
        with pytest.raises(AppointmentNotFound):
            await appointment_service.get_appointment(store, "missing")
        with pytest.raises(AppointmentNotFound):
            await appointment_service.status_history(store, "missing")


class TestProviderSummary:
    async def test_counters(self, store, provider, patient, other_patient, today):
        tomorrow = today + timedelta(days=1)
        a = await _book(store, provider, patient, tomorrow, time(23, 0))
        b = await _book(store, provider, other_patient, tomorrow + timedelta(days=2), time(10, 0))
        await _book(store, provider, patient, tomorrow + timedelta(days=3), time(10, 0))
        for appointment in (a, b):
            await booking_service.set_status(store, appointment.id, "confirmed", provider.identity)

        summary = await appointment_service.provider_summary(store, provider.id, today=tomorrow)

        assert summary == {
            "pending": 1,
            "confirmed_today": 1,
            "confirmed_this_week": 2,
            "total_patients": 2,
        }


class TestSeed:
    async def test_seed_once(self, local_store, today):
        counts = await seed_sample_data(local_store, today, days=2)

        assert counts == {"providers": 3, "patients": 2, "slots": 36}
        assert len(await slot_service.list_open_slots(local_store)) == 36
        user, _ = await auth_service.authenticate(local_store, "john.smith@example.com", SAMPLE_PASSWORD)
        assert user.display_name == "John Smith"
        assert await seed_sample_data(local_store, today) == {"providers": 0, "patients": 0, "slots": 0}

    async def test_seeded_slots_are_in_the_future(self, local_store, today):
        await seed_sample_data(local_store, today, days=1)

        slots = await slot_service.list_open_slots(local_store)

        assert all(s.starts_at > datetime.combine(today, time(23, 59)) for s in slots)
