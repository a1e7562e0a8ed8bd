"""Exception taxonomy shared by the services and the HTTP boundary."""

from __future__ import annotations

from typing import Optional


class BookingEngineError(Exception):
    """Base class for every error raised by the booking engine."""


class AppointmentNotFoundError(BookingEngineError):
    def __init__(self, appointment_id: int) -> None:
        super().__init__(f"Appointment not found: {appointment_id}")
        self.appointment_id = appointment_id


class InvalidTransitionError(BookingEngineError):
    """Requested status pair is not in the allowed-transition table."""

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Invalid status transition: {from_status} → {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class ConcurrentModificationError(BookingEngineError):
    """The row changed between read and write; re-read and retry."""

    def __init__(self, message: str = "Appointment was modified concurrently") -> None:
        super().__init__(message)


class SerializationConflictError(ConcurrentModificationError):
    """A SERIALIZABLE transaction was aborted by the store."""


class ValidationError(BookingEngineError):
    """A required field is missing or malformed for the requested operation."""


class HumanControlError(ValidationError):
    """Raised when the human-control flag forbids the caller's change."""


class ConversationStateTooLargeError(ValidationError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"Conversation state is {size_bytes} bytes, limit is {limit_bytes} bytes"
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class LockNotAcquiredError(BookingEngineError):
    """Another instance already holds the lock. Skip, do not retry-loop."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock already held: {key}")
        self.key = key


class CircuitOpenError(BookingEngineError):
    def __init__(self, name: str, retry_after: Optional[float] = None) -> None:
        message = f"Circuit '{name}' is open"
        if retry_after is not None:
            message += f"; retry in {retry_after:.1f}s"
        super().__init__(message)
        self.name = name
        self.retry_after = retry_after


class DuplicateRequestError(BookingEngineError):
    """An equivalent request already produced an appointment."""

    def __init__(
        self,
        appointment_id: int,
        status: str,
        reason: str,
        tracking_code: Optional[str] = None,
    ) -> None:
        super().__init__(f"Duplicate request ({reason}): appointment {appointment_id}")
        self.appointment_id = appointment_id
        self.status = status
        self.reason = reason
        self.tracking_code = tracking_code


class TherapistUnavailableError(BookingEngineError):
    def __init__(self, therapist_id: str, reason: str) -> None:
        super().__init__(f"Therapist {therapist_id} cannot accept requests: {reason}")
        self.therapist_id = therapist_id
        self.reason = reason


class RateLimitExceededError(BookingEngineError):
    """Too many creation attempts or active threads for one requester."""


class SideEffectDeliveryError(BookingEngineError):
    """A notification adapter reported failure."""
