"""Error taxonomy for the scheduling core.

Every failure raised by a service or store adapter is a SchedulingError.
The HTTP layer maps the base kinds to status codes; callers decide on
retries through ``retryable``.
"""


class SchedulingError(Exception):
    code = "scheduling_error"
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


class ValidationError(SchedulingError):
    """Invalid input."""

    code = "validation_error"


class ConflictError(SchedulingError):
    """The request conflicts with the current state."""

    code = "conflict"


class NotFoundError(SchedulingError):
    """Record not found."""

    code = "not_found"


class ForbiddenError(SchedulingError):
    """Not allowed for this identity."""

    code = "forbidden"


class AuthenticationError(SchedulingError):
    """Authentication failed."""

    code = "authentication_failed"


class TransientStoreError(SchedulingError):
    """Storage temporarily unavailable, retry later."""

    code = "store_unavailable"
    retryable = True


class PermanentStoreError(SchedulingError):
    """Storage rejected the operation."""

    code = "store_error"


# --- specific kinds ---


class InvalidDate(ValidationError):
    """Slot date is in the past."""

    code = "invalid_date"


class WeakCredential(ValidationError):
    """Password is too weak."""

    code = "weak_credential"


class DuplicateSlot(ConflictError):
    """An open slot already exists for this provider, date and time."""

    code = "duplicate_slot"


class SlotBooked(ConflictError):
    """Slot is already booked."""

    code = "slot_booked"


class AlreadyBooked(ConflictError):
    """Slot was booked by a concurrent request."""

    code = "already_booked"


class InvalidTransition(ConflictError):
    """Status transition not allowed."""

    code = "invalid_transition"


class EmailTaken(ConflictError):
    """An account with this email already exists."""

    code = "email_taken"


class SlotNotFound(NotFoundError):
    """Slot not found."""

    code = "slot_not_found"


class AppointmentNotFound(NotFoundError):
    """Appointment not found."""

    code = "appointment_not_found"


class UserNotFound(NotFoundError):
    """User not found."""

    code = "user_not_found"


class NotOwner(ForbiddenError):
    """Slot belongs to another provider."""

    code = "not_owner"


class InvalidCredential(AuthenticationError):
    """Invalid email or password."""

    code = "invalid_credential"
