from app.models.user import (
    Gender,
    Identity,
    PatientProfile,
    ProviderProfile,
    ProviderPublic,
    Role,
    User,
    UserPublic,
    UserUpdate,
)
from app.models.refresh_token import RefreshToken
from app.models.slot import OpenSlotPublic, Slot, SlotCreate, SlotPublic
from app.models.appointment import (
    Appointment,
    AppointmentPublic,
    AppointmentStatus,
    AppointmentStatusChange,
    StatusChangePublic,
)

__all__ = [
    "Gender",
    "Identity",
    "PatientProfile",
    "ProviderProfile",
    "ProviderPublic",
    "Role",
    "User",
    "UserPublic",
    "UserUpdate",
    "RefreshToken",
    "OpenSlotPublic",
    "Slot",
    "SlotCreate",
    "SlotPublic",
    "Appointment",
    "AppointmentPublic",
    "AppointmentStatus",
    "AppointmentStatusChange",
    "StatusChangePublic",
]
