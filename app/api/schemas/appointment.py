from pydantic import BaseModel

from app.models.appointment import AppointmentStatus


class BookAppointmentRequest(BaseModel):
    slot_id: str
    idempotency_key: str | None = None


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class ProviderSummary(BaseModel):
    pending: int
    confirmed_today: int
    confirmed_this_week: int
    total_patients: int
