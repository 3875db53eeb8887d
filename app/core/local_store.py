"""In-process persistence adapter.

Used when no database is configured (development, demos, tests). State
lives in dictionaries and is lost on restart. One lock serialises every
mutation, which is enough inside a single process; records are copied in
and out so callers never share mutable state with the store.
"""
import asyncio
from datetime import UTC, datetime
from typing import TypeVar

from sqlmodel import SQLModel

from app.core.errors import ConflictError, DuplicateSlot, EmailTaken
from app.models.appointment import Appointment, AppointmentStatusChange
from app.models.refresh_token import RefreshToken
from app.models.slot import Slot
from app.models.user import User

ModelT = TypeVar("ModelT", bound=SQLModel)


def _clone(obj: ModelT) -> ModelT:
    return type(obj).model_validate(obj.model_dump())


def _utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class LocalStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: dict[str, User] = {}
        self._refresh_tokens: dict[str, RefreshToken] = {}
        self._slots: dict[str, Slot] = {}
        self._appointments: dict[str, Appointment] = {}
        self._status_changes: list[AppointmentStatusChange] = []

    async def _io(self) -> None:
        # every call suspends once, like a round trip to a remote store
        await asyncio.sleep(0)

    # --- users ---

    async def insert_user(self, user: User) -> User:
        await self._io()
        async with self._lock:
            if any(u.email == user.email for u in self._users.values()):
                raise EmailTaken()
            self._users[user.id] = _clone(user)
        return user

    async def get_user(self, user_id: str) -> User | None:
        await self._io()
        user = self._users.get(user_id)
        return _clone(user) if user else None

    async def get_user_by_email(self, email: str) -> User | None:
        await self._io()
        for user in self._users.values():
            if user.email == email:
                return _clone(user)
        return None

    async def update_user(self, user: User) -> User:
        await self._io()
        async with self._lock:
            self._users[user.id] = _clone(user)
        return user

    async def list_users(self, role: str, specialty: str | None = None) -> list[User]:
        await self._io()
        users = [u for u in self._users.values() if u.role == role]
        if specialty:
            users = [u for u in users if u.specialty == specialty]
        return [_clone(u) for u in sorted(users, key=lambda u: u.display_name)]

    # --- refresh tokens ---

    async def insert_refresh_token(self, token: RefreshToken) -> None:
        await self._io()
        async with self._lock:
            self._refresh_tokens[token.jti] = _clone(token)

    async def get_refresh_token(self, jti: str) -> RefreshToken | None:
        await self._io()
        token = self._refresh_tokens.get(jti)
        return _clone(token) if token else None

    async def revoke_refresh_token(self, jti: str) -> bool:
        await self._io()
        async with self._lock:
            token = self._refresh_tokens.get(jti)
            if token is None or token.revoked:
                return False
            token.revoked = True
            return True

    # --- slots ---

    def _open_duplicate(self, slot: Slot) -> Slot | None:
        for other in self._slots.values():
            if (
                other.id != slot.id
                and not other.booked
                and other.provider_id == slot.provider_id
                and other.date == slot.date
                and other.time == slot.time
            ):
                return other
        return None

    async def insert_slot(self, slot: Slot) -> Slot:
        await self._io()
        async with self._lock:
            if not slot.booked and self._open_duplicate(slot) is not None:
                raise DuplicateSlot()
            self._slots[slot.id] = _clone(slot)
        return slot

    async def get_slot(self, slot_id: str) -> Slot | None:
        await self._io()
        slot = self._slots.get(slot_id)
        return _clone(slot) if slot else None

    async def query_slots(
        self, provider_id: str | None = None, booked: bool | None = None
    ) -> list[Slot]:
        await self._io()
        slots = [
            s
            for s in self._slots.values()
            if (provider_id is None or s.provider_id == provider_id)
            and (booked is None or s.booked == booked)
        ]
        slots.sort(key=lambda s: (s.date, s.time))
        return [_clone(s) for s in slots]

    async def delete_slot(self, slot_id: str, only_open: bool = True) -> bool:
        await self._io()
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None or (only_open and slot.booked):
                return False
            del self._slots[slot_id]
            return True

    async def set_slot_booked(self, slot_id: str, expected: bool, booked: bool) -> bool:
        await self._io()
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None or slot.booked != expected:
                return False
            if not booked and self._open_duplicate(slot) is not None:
                raise DuplicateSlot()
            slot.booked = booked
            slot.updated_at = _utc_naive_now()
            return True

    # --- appointments ---

    async def insert_appointment(
        self, appointment: Appointment, change: AppointmentStatusChange
    ) -> Appointment:
        await self._io()
        async with self._lock:
            if appointment.idempotency_key and any(
                a.patient_id == appointment.patient_id
                and a.idempotency_key == appointment.idempotency_key
                for a in self._appointments.values()
            ):
                raise ConflictError("Idempotency key already used for another booking")
            self._appointments[appointment.id] = _clone(appointment)
            self._status_changes.append(_clone(change))
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        await self._io()
        appointment = self._appointments.get(appointment_id)
        return _clone(appointment) if appointment else None

    async def find_appointment_by_idempotency_key(
        self, patient_id: str, idempotency_key: str
    ) -> Appointment | None:
        await self._io()
        for a in self._appointments.values():
            if a.patient_id == patient_id and a.idempotency_key == idempotency_key:
                return _clone(a)
        return None

    async def query_appointments(
        self,
        patient_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
    ) -> list[Appointment]:
        await self._io()
        appointments = [
            a
            for a in self._appointments.values()
            if (patient_id is None or a.patient_id == patient_id)
            and (provider_id is None or a.provider_id == provider_id)
            and (status is None or a.status == status)
        ]
        appointments.sort(key=lambda a: (a.date, a.time), reverse=True)
        return [_clone(a) for a in appointments]

    async def transition_appointment(
        self,
        appointment_id: str,
        expected_status: str,
        change: AppointmentStatusChange,
        updated_at: datetime,
        release_slot: bool = False,
    ) -> Appointment | None:
        await self._io()
        async with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None or appointment.status != expected_status:
                return None
            appointment.status = change.to_status
            appointment.updated_at = updated_at
            self._status_changes.append(_clone(change))
            slot = self._slots.get(appointment.slot_id)
            if release_slot and slot is not None and slot.booked:
                if self._open_duplicate(slot) is not None:
                    del self._slots[slot.id]
                else:
                    slot.booked = False
                    slot.updated_at = _utc_naive_now()
            return _clone(appointment)

    async def list_status_changes(self, appointment_id: str) -> list[AppointmentStatusChange]:
        await self._io()
        changes = [c for c in self._status_changes if c.appointment_id == appointment_id]
        return [_clone(c) for c in sorted(changes, key=lambda c: c.changed_at)]

    # --- housekeeping ---

    async def ping(self) -> bool:
        return True

    async def counts(self) -> dict[str, int]:
        return {
            "users": len(self._users),
            "slots": len(self._slots),
            "appointments": len(self._appointments),
        }

    async def close(self) -> None:
        pass
