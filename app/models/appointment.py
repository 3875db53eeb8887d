import datetime as dt
from enum import Enum
from uuid import uuid4

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> dt.datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    COMPLETED = "completed"


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.DECLINED}),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.COMPLETED}),
    AppointmentStatus.DECLINED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
}


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    __table_args__ = (
        sa.UniqueConstraint("patient_id", "idempotency_key", name="uq_appointments_patient_idempotency_key"),
    )
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    # No FK: a released duplicate slot may be dropped while declined appointments keep its id
    slot_id: str = Field(index=True)
    provider_id: str = Field(foreign_key="users.id", index=True)
    patient_id: str = Field(foreign_key="users.id", index=True)
    # Snapshots taken at booking time; later profile edits do not touch them
    provider_name: str
    patient_name: str
    patient_age: int | None = None
    patient_gender: str | None = None
    specialty: str
    date: dt.date = Field(index=True)
    time: dt.time
    status: str = Field(default=AppointmentStatus.PENDING.value, sa_type=sa.String(16), index=True)
    idempotency_key: str | None = None
    created_at: dt.datetime = Field(default_factory=_utc_naive_now)
    updated_at: dt.datetime = Field(default_factory=_utc_naive_now)

    @property
    def starts_at(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.time)


class AppointmentStatusChange(SQLModel, table=True):
    __tablename__ = "appointment_status_changes"
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    appointment_id: str = Field(foreign_key="appointments.id", index=True)
    from_status: str | None = Field(default=None, sa_type=sa.String(16))
    to_status: str = Field(sa_type=sa.String(16))
    changed_by: str
    changed_at: dt.datetime = Field(default_factory=_utc_naive_now)


class AppointmentPublic(SQLModel):
    id: str
    slot_id: str
    provider_id: str
    patient_id: str
    provider_name: str
    patient_name: str
    patient_age: int | None = None
    patient_gender: str | None = None
    specialty: str
    date: dt.date
    time: dt.time
    status: AppointmentStatus
    created_at: dt.datetime
    updated_at: dt.datetime


class StatusChangePublic(SQLModel):
    from_status: AppointmentStatus | None = None
    to_status: AppointmentStatus
    changed_by: str
    changed_at: dt.datetime
