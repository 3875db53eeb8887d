import datetime as dt
from uuid import uuid4

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> dt.datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class Slot(SQLModel, table=True):
    __tablename__ = "slots"
    # No two open slots may share (provider, date, time); booked ones may repeat the tuple
    __table_args__ = (
        Index(
            "uq_slots_open_provider_date_time",
            "provider_id",
            "date",
            "time",
            unique=True,
            postgresql_where=text("NOT booked"),
            sqlite_where=text("NOT booked"),
        ),
    )
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    provider_id: str = Field(foreign_key="users.id", index=True)
    date: dt.date = Field(index=True)
    time: dt.time
    booked: bool = Field(default=False, index=True)
    created_at: dt.datetime = Field(default_factory=_utc_naive_now)
    updated_at: dt.datetime = Field(default_factory=_utc_naive_now)

    @property
    def starts_at(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.time)


class SlotCreate(SQLModel):
    date: dt.date
    time: dt.time


class SlotPublic(SQLModel):
    id: str
    provider_id: str
    date: dt.date
    time: dt.time
    booked: bool


class OpenSlotPublic(SlotPublic):
    provider_name: str
    specialty: str
