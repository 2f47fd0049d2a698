"""Session-level raffle operations.

Each function works inside a caller-supplied SQLAlchemy session and only
flushes; committing (and turning database errors into ``PersistenceError``)
is left to :class:`rafflehub.service.RaffleService`.
"""

import hmac
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from .draw import draw_winner
from .errors import (
    AlreadyClosedError,
    AuthorizationError,
    NotFoundError,
    RaffleClosedError,
    ValidationError,
)
from .models import Participant, PaymentReceipt, Raffle, Ticket
from .prizes import PrizeSpec, parse_prize_spec
from .validation import (
    optional_text,
    parse_amount,
    parse_future_timestamp,
    require_text,
)

UNAUTHORIZED_SECRET = "Unauthorized: Invalid creator secret"


@dataclass(frozen=True)
class RaffleFields:
    """Validated input for a new raffle."""

    title: str
    description: Optional[str]
    prize: PrizeSpec
    ticket_price: Decimal
    end_time: datetime


@dataclass(frozen=True)
class TicketHolder:
    """Who a batch of tickets is issued to."""

    display_name: str
    contact: str
    email: Optional[str] = None

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> "TicketHolder":
        """Validate holder fields; ``name`` is accepted as an alias of ``displayName``."""
        display_name = fields.get("displayName") or fields.get("name")
        return cls(
            display_name=require_text(display_name, "displayName", max_length=100),
            contact=require_text(fields.get("contact"), "contact", max_length=100),
            email=optional_text(fields.get("email"), "email", max_length=100),
        )


def parse_raffle_fields(
    fields: Mapping[str, Any],
    *,
    prize_image: Optional[bytes] = None,
    prize_image_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RaffleFields:
    """Validate the raw creation form.

    Raises
    ------
    ValidationError
        On the first invalid field, with a human readable reason.
    """
    now = now or datetime.now(timezone.utc)

    prize = parse_prize_spec(
        fields.get("prizeTypes"),
        cash_prize=fields.get("cashPrize"),
        item_name=fields.get("itemName"),
        image=prize_image,
        image_type=prize_image_type,
    )
    title = require_text(fields.get("title"), "title", max_length=200)
    description = optional_text(fields.get("description"), "description", max_length=5000)
    ticket_price = parse_amount(
        fields.get("ticketPrice"),
        "ticketPrice",
        allow_zero=True,
        message="Ticket price must be a non-negative number",
    )
    end_time = parse_future_timestamp(fields.get("endTime"), "endTime", now)

    return RaffleFields(
        title=title,
        description=description,
        prize=prize,
        ticket_price=ticket_price,
        end_time=end_time,
    )


def create_raffle(
    session: Session,
    created_by: str,
    fields: RaffleFields,
    *,
    currency: str = "GHS",
    now: Optional[datetime] = None,
) -> Raffle:
    """Add a new raffle with no participants and a fresh creator secret."""
    raffle = Raffle(
        title=fields.title,
        description=fields.description,
        prize=fields.prize,
        ticket_price=fields.ticket_price,
        end_time=fields.end_time,
        created_by=created_by,
        currency=currency,
        created_at=now or datetime.now(timezone.utc),
    )
    session.add(raffle)
    session.flush()
    return raffle


def get_raffle(session: Session, raffle_id: str, *, lock: bool = False) -> Raffle:
    """Load a raffle or raise ``NotFoundError``.

    ``lock`` takes a shared row lock (FOR SHARE) so the row cannot be closed
    until the caller's transaction ends.
    """
    raffle = Raffle.get_by_id(session, raffle_id, lock=lock) if raffle_id else None
    if raffle is None:
        raise NotFoundError("Raffle not found")
    return raffle


def get_ticket(session: Session, raffle_id: str, ticket_number: str) -> tuple[Raffle, Participant]:
    """Return the raffle and the participant holding ``ticket_number``."""
    raffle = get_raffle(session, raffle_id)
    ticket = Ticket.get_by_number(session, raffle.id, ticket_number)
    if ticket is None:
        raise NotFoundError("Ticket not found")
    return raffle, ticket.participant


def ensure_open(raffle: Raffle, now: Optional[datetime] = None) -> None:
    if not raffle.is_open(now):
        raise RaffleClosedError("Raffle has ended")


def record_receipt(
    session: Session,
    raffle: Raffle,
    reference: str,
    channel: str,
    *,
    amount_minor: Optional[int] = None,
    currency: Optional[str] = None,
) -> PaymentReceipt:
    """Store the payment reference; the unique constraint rejects a second use."""
    receipt = PaymentReceipt(
        reference=reference,
        raffle_id=raffle.id,
        channel=channel,
        amount_minor=amount_minor,
        currency=currency,
    )
    session.add(receipt)
    session.flush()
    return receipt


def append_tickets(
    session: Session,
    raffle: Raffle,
    holder: TicketHolder,
    ticket_numbers: Sequence[str],
    *,
    receipt: Optional[PaymentReceipt] = None,
) -> Participant:
    """Insert a participant holding ``ticket_numbers``.

    The participant and its tickets are new rows; the raffle row itself is not
    rewritten, so concurrent issuances cannot overwrite each other.
    """
    if not ticket_numbers:
        raise ValueError("At least one ticket number is required")

    participant = Participant(
        raffle=raffle,
        display_name=holder.display_name,
        contact=holder.contact,
        email=holder.email,
    )
    session.add(participant)

    for number in ticket_numbers:
        participant.tickets.append(
            Ticket(number=number, raffle_id=raffle.id, receipt=receipt)
        )
    session.flush()
    return participant


def authorize_creator(session: Session, raffle_id: str, secret: str, *, for_update: bool = False) -> Raffle:
    """Return the raffle when ``secret`` matches its creator secret.

    An unknown raffle and a wrong secret raise the same error so the caller
    learns nothing about which raffles exist.
    """
    raffle = None
    if raffle_id:
        raffle = session.get(Raffle, raffle_id, with_for_update=for_update)
    if raffle is None or not secret or not hmac.compare_digest(
        raffle.creator_secret.encode("utf-8"), secret.encode("utf-8")
    ):
        raise AuthorizationError(UNAUTHORIZED_SECRET)
    return raffle


def close_raffle(
    session: Session,
    raffle_id: str,
    secret: str,
    *,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> Raffle:
    """Draw a winner among all tickets and close the raffle for good.

    Raises
    ------
    AuthorizationError
        If the raffle does not exist or the secret does not match.
    AlreadyClosedError
        If the raffle was closed before; the earlier winner is kept.
    """
    now = now or datetime.now(timezone.utc)
    raffle = authorize_creator(session, raffle_id, secret, for_update=True)
    if raffle.is_closed:
        raise AlreadyClosedError("Raffle is already closed")

    raffle.winner = draw_winner(raffle.ticket_numbers, rng=rng)
    raffle.end_time = now
    raffle.closed_at = now
    session.flush()
    return raffle


def update_raffle(
    session: Session,
    raffle_id: str,
    secret: str,
    fields: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> Raffle:
    """Edit the title, description or end time of an open raffle."""
    now = now or datetime.now(timezone.utc)
    raffle = authorize_creator(session, raffle_id, secret)
    if raffle.is_closed:
        raise AlreadyClosedError("Raffle is already closed")

    editable = {"title", "description", "endTime"}
    unknown = set(fields) - editable
    if unknown:
        raise ValidationError(
            "Only title, description and endTime can be changed",
            field=sorted(unknown)[0],
        )

    if "title" in fields:
        raffle.title = require_text(fields["title"], "title", max_length=200)
    if "description" in fields:
        raffle.description = optional_text(fields["description"], "description", max_length=5000)
    if "endTime" in fields:
        raffle.end_time = parse_future_timestamp(fields["endTime"], "endTime", now)
    session.flush()
    return raffle


def delete_raffle(session: Session, raffle_id: str, secret: str) -> None:
    """Remove a raffle together with its participants, tickets and receipts."""
    raffle = authorize_creator(session, raffle_id, secret)
    session.delete(raffle)
    session.flush()
