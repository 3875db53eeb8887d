"""Persistence capability consumed by the scheduling services.

Two interchangeable adapters implement it: ``SqlStore`` (remote database)
and ``LocalStore`` (in-process fallback). One of them is selected at
startup by ``create_store``; business logic never branches on which one
it is talking to.
"""
from datetime import datetime
from typing import Protocol

from app.models.appointment import Appointment, AppointmentStatusChange
from app.models.refresh_token import RefreshToken
from app.models.slot import Slot
from app.models.user import User


class PersistenceProvider(Protocol):
    # users
    async def insert_user(self, user: User) -> User:
        """Create a user. Raises EmailTaken on a duplicate email."""
        ...

    async def get_user(self, user_id: str) -> User | None: ...

    async def get_user_by_email(self, email: str) -> User | None: ...

    async def update_user(self, user: User) -> User: ...

    async def list_users(self, role: str, specialty: str | None = None) -> list[User]:
        """Users with the given role, ordered by display name."""
        ...

    # refresh tokens
    async def insert_refresh_token(self, token: RefreshToken) -> None: ...

    async def get_refresh_token(self, jti: str) -> RefreshToken | None: ...

    async def revoke_refresh_token(self, jti: str) -> bool:
        """Conditional write revoked False -> True. Returns False if already revoked or unknown."""
        ...

    # slots
    async def insert_slot(self, slot: Slot) -> Slot:
        """Create a slot. Raises DuplicateSlot if an open slot has the same tuple."""
        ...

    async def get_slot(self, slot_id: str) -> Slot | None: ...

    async def query_slots(
        self, provider_id: str | None = None, booked: bool | None = None
    ) -> list[Slot]:
        """Slots ordered by (date, time) ascending."""
        ...

    async def delete_slot(self, slot_id: str, only_open: bool = True) -> bool: ...

    async def set_slot_booked(self, slot_id: str, expected: bool, booked: bool) -> bool:
        """Compare-and-swap on the booked flag. Returns False when the current value != expected.

        Raises DuplicateSlot when releasing would collide with another open slot.
        """
        ...

    # appointments
    async def insert_appointment(
        self, appointment: Appointment, change: AppointmentStatusChange
    ) -> Appointment:
        """Create the appointment and its first history entry in one write."""
        ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None: ...

    async def find_appointment_by_idempotency_key(
        self, patient_id: str, idempotency_key: str
    ) -> Appointment | None: ...

    async def query_appointments(
        self,
        patient_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
    ) -> list[Appointment]:
        """Appointments ordered by date desc, time desc."""
        ...

    async def transition_appointment(
        self,
        appointment_id: str,
        expected_status: str,
        change: AppointmentStatusChange,
        updated_at: datetime,
        release_slot: bool = False,
    ) -> Appointment | None:
        """Atomically move status expected -> change.to_status, record the change and
        optionally release the appointment's slot. Returns None if the status moved on."""
        ...

    async def list_status_changes(self, appointment_id: str) -> list[AppointmentStatusChange]: ...

    # housekeeping
    async def ping(self) -> bool: ...

    async def counts(self) -> dict[str, int]: ...

    async def close(self) -> None: ...
