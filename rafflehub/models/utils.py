"""Utility helpers for the models package."""

from __future__ import annotations

import secrets
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

TICKET_NUMBER_BYTES = 8
CREATOR_SECRET_BYTES = 16
RAFFLE_ID_BYTES = 12


def generate_raffle_id() -> str:
    """Return an opaque 24-character hex identifier for a raffle."""
    return secrets.token_hex(RAFFLE_ID_BYTES)


def generate_creator_secret() -> str:
    """Return a fresh 32-character hex capability token."""
    return secrets.token_hex(CREATOR_SECRET_BYTES)


def generate_ticket_numbers(
    count: int,
    session: Optional[Session] = None,
    max_attempts: int = 32,
) -> list[str]:
    """Return ``count`` distinct ticket numbers of 16 uppercase hex characters.

    Numbers come from :mod:`secrets`, never from a counter. When a session is
    provided, the helper retries if a generated value is already present (or
    pending) in ``Ticket.number``.
    """
    if count < 1:
        raise ValueError("count must be a positive integer")

    ticket_cls = None
    if session is not None:
        from .raffle import Ticket

        ticket_cls = Ticket

    numbers: list[str] = []
    attempts = 0
    while len(numbers) < count:
        if attempts >= max_attempts:
            raise RuntimeError(
                "Unable to generate a unique ticket number after multiple attempts"
            )
        candidate = secrets.token_hex(TICKET_NUMBER_BYTES).upper()

        if candidate in numbers:
            attempts += 1
            continue

        if session is not None and ticket_cls is not None:
            if _pending_number(session.new, ticket_cls, candidate):
                attempts += 1
                continue
            exists = session.scalar(
                select(ticket_cls.id).where(ticket_cls.number == candidate)
            )
            if exists is not None:
                attempts += 1
                continue

        numbers.append(candidate)

    return numbers


def _pending_number(pending: Iterable[object], ticket_cls: type, candidate: str) -> bool:
    for obj in pending:
        if isinstance(obj, ticket_cls) and getattr(obj, "number", None) == candidate:
            return True
    return False
