"""ORM models; importing this package registers every table on ``Base``."""

from booking_engine.models.appointment import Appointment
from booking_engine.models.base import Base
from booking_engine.models.client import Client
from booking_engine.models.side_effect import SideEffect
from booking_engine.models.therapist import Therapist

__all__ = ["Appointment", "Base", "Client", "SideEffect", "Therapist"]
