from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from sqlmodel import Field, SQLModel

# Reference specialties offered by the registration form; any non-empty string is accepted
SPECIALTIES = (
    "cardiology",
    "dermatology",
    "pediatrics",
    "orthopedics",
    "neurology",
    "general",
)

SCHEDULER_USER_ID = "system:scheduler"


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_id() -> str:
    return uuid4().hex


class Role(str, Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    SCHEDULER = "scheduler"  # automated policies only, never a registered user


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class Identity(BaseModel):
    """Who is calling: resolved once per request and passed explicitly."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


SCHEDULER_IDENTITY = Identity(user_id=SCHEDULER_USER_ID, role=Role.SCHEDULER)


class UserBase(SQLModel):
    email: str = Field(unique=True, index=True)
    display_name: str
    role: str = Field(index=True)
    # patient profile
    age: int | None = None
    gender: str | None = None
    # provider profile
    specialty: str | None = None


class User(UserBase, table=True):
    __tablename__ = "users"
    id: str = Field(default_factory=_new_id, primary_key=True)
    hashed_password: str
    created_at: datetime = Field(default_factory=_utc_naive_now)
    updated_at: datetime = Field(default_factory=_utc_naive_now)

    @property
    def identity(self) -> Identity:
        return Identity(user_id=self.id, role=Role(self.role))


class PatientProfile(SQLModel):
    display_name: str = Field(min_length=2)
    age: int = Field(ge=1, le=120)
    gender: Gender


class ProviderProfile(SQLModel):
    display_name: str = Field(min_length=2)
    specialty: str = Field(min_length=1)


class UserUpdate(SQLModel):
    display_name: str | None = Field(default=None, min_length=2)
    specialty: str | None = Field(default=None, min_length=1)


class UserPublic(SQLModel):
    id: str
    email: str
    display_name: str
    role: str
    age: int | None = None
    gender: str | None = None
    specialty: str | None = None


class ProviderPublic(SQLModel):
    id: str
    display_name: str
    specialty: str | None = None
