"""Remote persistence adapter: SQLModel tables over an async SQLAlchemy engine.

All guarded transitions are single conditional UPDATE statements, so they
stay correct with many application processes sharing one database.
"""
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import delete, desc, func, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import SQLModel

from app.core.db import create_session_maker
from app.core.errors import (
    ConflictError,
    DuplicateSlot,
    EmailTaken,
    PermanentStoreError,
    SchedulingError,
    TransientStoreError,
)
from app.models.appointment import Appointment, AppointmentStatusChange
from app.models.refresh_token import RefreshToken
from app.models.slot import Slot
from app.models.user import User

logger = logging.getLogger(__name__)


def _utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class SqlStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_maker = create_session_maker(engine)

    async def init_db(self) -> None:
        """Create tables if using create_all; prefer Alembic in production."""
        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(
        self, on_conflict: Callable[[], SchedulingError] | None = None
    ) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except IntegrityError as exc:
            if on_conflict is None:
                raise PermanentStoreError(f"Integrity error: {exc.orig}") from exc
            raise on_conflict() from exc
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Database unavailable: %s", exc)
            raise TransientStoreError(f"Database unavailable: {exc.orig}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientStoreError("Database connection lost") from exc
            raise PermanentStoreError(f"{type(exc.orig).__name__}: {exc.orig}") from exc
        except (OSError, TimeoutError) as exc:
            logger.warning("Database unreachable: %s", exc)
            raise TransientStoreError(f"Database unreachable: {exc}") from exc

    # --- users ---

    async def insert_user(self, user: User) -> User:
        async with self._transaction(on_conflict=EmailTaken) as session:
            session.add(user)
        return user

    async def get_user(self, user_id: str) -> User | None:
        async with self._transaction() as session:
            return await session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        async with self._transaction() as session:
            result = await session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

    async def update_user(self, user: User) -> User:
        async with self._transaction() as session:
            merged = await session.merge(user)
        return merged

    async def list_users(self, role: str, specialty: str | None = None) -> list[User]:
        q = select(User).where(User.role == role).order_by(User.display_name)
        if specialty:
            q = q.where(User.specialty == specialty)
        async with self._transaction() as session:
            result = await session.execute(q)
            return list(result.scalars().all())

    # --- refresh tokens ---

    async def insert_refresh_token(self, token: RefreshToken) -> None:
        async with self._transaction() as session:
            session.add(token)

    async def get_refresh_token(self, jti: str) -> RefreshToken | None:
        async with self._transaction() as session:
            result = await session.execute(select(RefreshToken).where(RefreshToken.jti == jti))
            return result.scalar_one_or_none()

    async def revoke_refresh_token(self, jti: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.jti == jti, RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True)
            )
            return result.rowcount == 1

    # --- slots ---

    async def insert_slot(self, slot: Slot) -> Slot:
        async with self._transaction(on_conflict=DuplicateSlot) as session:
            session.add(slot)
        return slot

    async def get_slot(self, slot_id: str) -> Slot | None:
        async with self._transaction() as session:
            return await session.get(Slot, slot_id)

    async def query_slots(
        self, provider_id: str | None = None, booked: bool | None = None
    ) -> list[Slot]:
        q = select(Slot).order_by(Slot.date, Slot.time)
        if provider_id is not None:
            q = q.where(Slot.provider_id == provider_id)
        if booked is not None:
            q = q.where(Slot.booked == booked)
        async with self._transaction() as session:
            result = await session.execute(q)
            return list(result.scalars().all())

    async def delete_slot(self, slot_id: str, only_open: bool = True) -> bool:
        stmt = delete(Slot).where(Slot.id == slot_id)
        if only_open:
            stmt = stmt.where(Slot.booked == False)  # noqa: E712
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def set_slot_booked(self, slot_id: str, expected: bool, booked: bool) -> bool:
        async with self._transaction(on_conflict=DuplicateSlot) as session:
            result = await session.execute(
                update(Slot)
                .where(Slot.id == slot_id, Slot.booked == expected)
                .values(booked=booked, updated_at=_utc_naive_now())
            )
            return result.rowcount == 1

    async def _release_slot(self, session: AsyncSession, slot_id: str) -> None:
        slot = await session.get(Slot, slot_id)
        if slot is None or not slot.booked:
            return
        duplicate = await session.execute(
            select(Slot.id).where(
                Slot.provider_id == slot.provider_id,
                Slot.date == slot.date,
                Slot.time == slot.time,
                Slot.booked == False,  # noqa: E712
                Slot.id != slot.id,
            )
        )
        if duplicate.first() is not None:
            logger.info("Dropping released slot %s: an identical open slot exists", slot_id)
            await session.delete(slot)
            return
        slot.booked = False
        slot.updated_at = _utc_naive_now()

    # --- appointments ---

    async def insert_appointment(
        self, appointment: Appointment, change: AppointmentStatusChange
    ) -> Appointment:
        def _conflict() -> ConflictError:
            return ConflictError("Idempotency key already used for another booking")

        async with self._transaction(on_conflict=_conflict) as session:
            session.add(appointment)
            session.add(change)
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        async with self._transaction() as session:
            return await session.get(Appointment, appointment_id)

    async def find_appointment_by_idempotency_key(
        self, patient_id: str, idempotency_key: str
    ) -> Appointment | None:
        async with self._transaction() as session:
            result = await session.execute(
                select(Appointment).where(
                    Appointment.patient_id == patient_id,
                    Appointment.idempotency_key == idempotency_key,
                )
            )
            return result.scalar_one_or_none()

    async def query_appointments(
        self,
        patient_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
    ) -> list[Appointment]:
        q = select(Appointment).order_by(desc(Appointment.date), desc(Appointment.time))
        if patient_id is not None:
            q = q.where(Appointment.patient_id == patient_id)
        if provider_id is not None:
            q = q.where(Appointment.provider_id == provider_id)
        if status is not None:
            q = q.where(Appointment.status == status)
        async with self._transaction() as session:
            result = await session.execute(q)
            return list(result.scalars().all())

    async def transition_appointment(
        self,
        appointment_id: str,
        expected_status: str,
        change: AppointmentStatusChange,
        updated_at: datetime,
        release_slot: bool = False,
    ) -> Appointment | None:
        def _conflict() -> TransientStoreError:
            return TransientStoreError("Slot release raced with a concurrent publish, retry")

        async with self._transaction(on_conflict=_conflict) as session:
            result = await session.execute(
                update(Appointment)
                .where(Appointment.id == appointment_id, Appointment.status == expected_status)
                .values(status=change.to_status, updated_at=updated_at)
            )
            if result.rowcount != 1:
                return None
            session.add(change)
            appointment = await session.get(Appointment, appointment_id)
            if release_slot and appointment is not None:
                await self._release_slot(session, appointment.slot_id)
        return appointment

    async def list_status_changes(self, appointment_id: str) -> list[AppointmentStatusChange]:
        async with self._transaction() as session:
            result = await session.execute(
                select(AppointmentStatusChange)
                .where(AppointmentStatusChange.appointment_id == appointment_id)
                .order_by(AppointmentStatusChange.changed_at)
            )
            return list(result.scalars().all())

    # --- housekeeping ---

    async def ping(self) -> bool:
        async with self._transaction() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        async with self._transaction() as session:
            for name, model in (("users", User), ("slots", Slot), ("appointments", Appointment)):
                result = await session.execute(select(func.count()).select_from(model))
                out[name] = int(result.scalar_one())
        return out
