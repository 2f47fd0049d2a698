from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .admin import Admin  # noqa: F401
from .raffle import Raffle, Participant, Ticket  # noqa: F401
from .payment import PaymentReceipt  # noqa: F401

__all__ = [
    "Base",
    "Admin",
    "Raffle",
    "Participant",
    "Ticket",
    "PaymentReceipt",
]
