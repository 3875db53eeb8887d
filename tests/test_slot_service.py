"""Availability: publishing, withdrawing and listing slots."""
from datetime import datetime, time, timedelta

import pytest

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
from app.services import booking_service, slot_service


class TestPublishSlot:
    async def test_publish_creates_open_slot(self, store, provider, slot_day, nine, sink):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine, sinks=[sink])

        assert slot.booked is False
        assert slot.provider_id == provider.id
        stored = await store.get_slot(slot.id)
        assert stored is not None
        assert (stored.date, stored.time) == (slot_day, nine)
        assert sink.kinds == ["slot.published"]

    async def test_past_date_rejected(self, store, provider, today, nine):
        with pytest.raises(InvalidDate):
            await slot_service.publish_slot(store, provider.id, today - timedelta(days=1), nine)

    async def test_earlier_time_today_rejected(self, store, provider, slot_day):
        now = datetime.combine(slot_day, time(12, 0))
        with pytest.raises(InvalidDate):
            await slot_service.publish_slot(store, provider.id, slot_day, time(11, 30), now=now)

    async def test_later_time_today_accepted(self, store, provider, slot_day):
        now = datetime.combine(slot_day, time(12, 0))
        slot = await slot_service.publish_slot(store, provider.id, slot_day, time(12, 30), now=now)
        assert slot.time == time(12, 30)

    async def test_duplicate_open_slot_rejected(self, store, provider, slot_day, nine):
        await slot_service.publish_slot(store, provider.id, slot_day, nine)
        with pytest.raises(DuplicateSlot):
            await slot_service.publish_slot(store, provider.id, slot_day, nine)

    async def test_seconds_do_not_make_a_new_slot(self, store, provider, slot_day, nine):
        await slot_service.publish_slot(store, provider.id, slot_day, nine)
        with pytest.raises(DuplicateSlot):
            await slot_service.publish_slot(store, provider.id, slot_day, time(9, 0, 45))

    async def test_same_time_for_two_providers_is_fine(self, store, provider, other_provider, slot_day, nine):
        await slot_service.publish_slot(store, provider.id, slot_day, nine)
        await slot_service.publish_slot(store, other_provider.id, slot_day, nine)

        assert len(await slot_service.list_open_slots(store)) == 2

    async def test_patient_can_not_publish(self, store, patient, slot_day, nine):
        with pytest.raises(ForbiddenError):
            await slot_service.publish_slot(store, patient.id, slot_day, nine)

    async def test_republish_after_booking(self, store, provider, patient, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        await booking_service.book(store, slot.id, patient.id)

        again = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        assert again.id != slot.id
        assert [s.id for s in await slot_service.list_open_slots(store)] == [again.id]


class TestWithdrawSlot:
    async def test_withdraw_open_slot(self, store, provider, slot_day, nine, sink):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        await slot_service.withdraw_slot(store, slot.id, provider.id, sinks=[sink])

        assert await store.get_slot(slot.id) is None
        assert sink.kinds == ["slot.withdrawn"]

    async def test_withdraw_unknown_slot(self, store, provider):
        with pytest.raises(SlotNotFound):
            await slot_service.withdraw_slot(store, "missing", provider.id)

    async def test_only_owner_can_withdraw(self, store, provider, other_provider, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        with pytest.raises(NotOwner):
            await slot_service.withdraw_slot(store, slot.id, other_provider.id)
        assert await store.get_slot(slot.id) is not None

    async def test_booked_slot_can_not_be_withdrawn(self, store, provider, patient, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        await booking_service.book(store, slot.id, patient.id)

        with pytest.raises(SlotBooked):
            await slot_service.withdraw_slot(store, slot.id, provider.id)

    async def test_min_notice(self, store, provider, slot_day, nine, monkeypatch):
        monkeypatch.setattr(settings, "slot_withdraw_min_notice_minutes", 120)
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        with pytest.raises(ValidationError):
            await slot_service.withdraw_slot(
                store, slot.id, provider.id, now=datetime.combine(slot_day, time(8, 0))
            )
        await slot_service.withdraw_slot(store, slot.id, provider.id, now=datetime.combine(slot_day, time(6, 0)))
        assert await store.get_slot(slot.id) is None


class TestListing:
    async def test_open_slots_ordered_by_date_and_time(self, store, provider, slot_day):
        await slot_service.publish_slot(store, provider.id, slot_day + timedelta(days=1), time(8, 0))
        await slot_service.publish_slot(store, provider.id, slot_day, time(14, 0))
        await slot_service.publish_slot(store, provider.id, slot_day, time(9, 30))

        slots = await slot_service.list_open_slots(store)

        assert [(s.date, s.time) for s in slots] == [
            (slot_day, time(9, 30)),
            (slot_day, time(14, 0)),
            (slot_day + timedelta(days=1), time(8, 0)),
        ]

    async def test_open_slots_exclude_booked(self, store, provider, patient, slot_day):
        first = await slot_service.publish_slot(store, provider.id, slot_day, time(9, 0))
        second = await slot_service.publish_slot(store, provider.id, slot_day, time(10, 0))
        await booking_service.book(store, first.id, patient.id)

        assert [s.id for s in await slot_service.list_open_slots(store)] == [second.id]
        assert len(await slot_service.list_provider_slots(store, provider.id)) == 2

    async def test_filter_by_provider(self, store, provider, other_provider, slot_day, nine):
        await slot_service.publish_slot(store, provider.id, slot_day, nine)
        mine = await slot_service.publish_slot(store, other_provider.id, slot_day, nine)

        slots = await slot_service.list_open_slots(store, provider_id=other_provider.id)

        assert [s.id for s in slots] == [mine.id]

    async def test_open_slots_carry_provider_details(self, store, provider, slot_day, nine):
        await slot_service.publish_slot(store, provider.id, slot_day, nine)

        (slot,) = await slot_service.list_open_slots_with_providers(store)

        assert slot.provider_name == "Dr. Gregory House"
        assert slot.specialty == "cardiology"


class TestBookedFlag:
    async def test_mark_booked_twice(self, store, provider, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        await slot_service.mark_booked(store, slot.id)
        with pytest.raises(AlreadyBooked):
            await slot_service.mark_booked(store, slot.id)

    async def test_mark_booked_unknown(self, store):
        with pytest.raises(SlotNotFound):
            await slot_service.mark_booked(store, "missing")

    async def test_release_drops_slot_when_identical_open_slot_exists(self, store, provider, slot_day, nine):
        slot = await slot_service.publish_slot(store, provider.id, slot_day, nine)
        await slot_service.mark_booked(store, slot.id)
        newer = await slot_service.publish_slot(store, provider.id, slot_day, nine)

        await slot_service.mark_released(store, slot.id)

        assert await store.get_slot(slot.id) is None
        assert [s.id for s in await slot_service.list_open_slots(store)] == [newer.id]
