"""Database models for raffles, their participants and issued tickets."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship, validates

from ..db.utils import as_utc, dt_iso
from ..prizes import CashPrize, ItemPrize, PrizeSpec
from .base import Base
from .utils import generate_creator_secret, generate_raffle_id

if TYPE_CHECKING:
    from .payment import PaymentReceipt


class Raffle(Base):
    """A prize draw with a ticket price, a closing time and its participants."""

    __tablename__ = "raffles"

    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=generate_raffle_id)
    """Opaque identifier exposed in URLs."""

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    cash_prize: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    """Cash prize amount; set only when the prize includes cash."""

    item_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    prize_image: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    prize_image_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    ticket_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="GHS")

    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    """No tickets are issued once this passes; moved to "now" on closure."""

    created_by: Mapped[str] = mapped_column(String(50), nullable=False)
    """Username of the organizer whose session created the raffle."""

    creator_secret: Mapped[str] = mapped_column(
        String(64), nullable=False, default=generate_creator_secret
    )
    """Capability token for closing, editing and deleting. Never serialized."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    winner: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    """Winning ticket number, set by the draw."""

    participants: Mapped[list["Participant"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Participant.id",
    )
    receipts: Mapped[list["PaymentReceipt"]] = relationship(
        back_populates="raffle",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __init__(
        self,
        *,
        title: str,
        prize: PrizeSpec,
        ticket_price: Decimal,
        end_time: datetime,
        created_by: str,
        description: Optional[str] = None,
        currency: str = "GHS",
        created_at: Optional[datetime] = None,
    ) -> None:
        self.id = generate_raffle_id()
        self.creator_secret = generate_creator_secret()
        self.title = title
        self.description = description
        self.ticket_price = ticket_price
        self.currency = currency
        self.end_time = end_time
        self.created_by = created_by
        self.prize = prize
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return f"<Raffle(id='{self.id}', title='{self.title}', winner={self.winner})>"

    @property
    def prize(self) -> PrizeSpec:
        cash = CashPrize(self.cash_prize) if self.cash_prize is not None else None
        item = None
        if self.item_name is not None:
            item = ItemPrize(
                name=self.item_name,
                image=self.prize_image or b"",
                image_type=self.prize_image_type or "image/png",
            )
        return PrizeSpec(cash=cash, item=item)

    @prize.setter
    def prize(self, spec: PrizeSpec) -> None:
        self.cash_prize = spec.cash.amount if spec.cash is not None else None
        if spec.item is not None:
            self.item_name = spec.item.name
            self.prize_image = spec.item.image
            self.prize_image_type = spec.item.image_type
        else:
            self.item_name = None
            self.prize_image = None
            self.prize_image_type = None

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def is_open(self, now: Optional[datetime] = None) -> bool:
        """Return ``True`` while new tickets may be issued."""
        now = now or datetime.now(timezone.utc)
        return not self.is_closed and as_utc(self.end_time) > now

    @property
    def is_free(self) -> bool:
        return Decimal(self.ticket_price) == 0

    @property
    def ticket_numbers(self) -> list[str]:
        """All ticket numbers held in this raffle, in issuance order."""
        return [t.number for p in self.participants for t in p.tickets]

    def price_in_minor_units(self, quantity: int = 1) -> int:
        """Total price of ``quantity`` tickets in the gateway's minor units."""
        return int((Decimal(self.ticket_price) * quantity * 100).to_integral_value())

    def to_json(self, *, include_participants: bool = True) -> dict[str, Any]:
        """Serialize the public view of the raffle; ``creator_secret`` is omitted."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description or "",
            "prizeTypes": self.prize.prize_types,
            "cashPrize": float(self.cash_prize) if self.cash_prize is not None else None,
            "itemName": self.item_name,
            "prizeImage": (
                base64.b64encode(self.prize_image).decode("ascii")
                if self.prize_image
                else None
            ),
            "prizeImageType": self.prize_image_type,
            "ticketPrice": float(self.ticket_price),
            "currency": self.currency,
            "endTime": dt_iso(self.end_time),
            "createdBy": self.created_by,
            "createdAt": dt_iso(self.created_at),
            "closedAt": dt_iso(self.closed_at),
            "winner": self.winner,
            "participantCount": len(self.participants),
            "ticketCount": len(self.ticket_numbers),
        }
        if include_participants:
            data["participants"] = [p.to_json() for p in self.participants]
        return data

    @classmethod
    def get_by_id(cls, session: Session, raffle_id: str, lock: bool = False) -> Optional["Raffle"]:
        if lock:
            return session.get(cls, raffle_id, with_for_update={"read": True})
        return session.get(cls, raffle_id)

    @classmethod
    def list_newest_first(cls, session: Session) -> list["Raffle"]:
        stmt = select(cls).order_by(cls.created_at.desc(), cls.id.desc())
        return list(session.scalars(stmt).all())


class Participant(Base):
    """A ticket holder within one raffle."""

    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_id: Mapped[str] = mapped_column(
        String(24), ForeignKey("raffles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    contact: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    raffle: Mapped["Raffle"] = relationship(back_populates="participants")
    tickets: Mapped[list["Ticket"]] = relationship(
        back_populates="participant",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Ticket.id",
    )

    @validates("display_name", "contact")
    def _require_text(self, key: str, value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError(f"{key} must not be empty")
        return normalized

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Participant(id={self.id}, raffle_id='{self.raffle_id}', "
            f"display_name='{self.display_name}')>"
        )

    @property
    def ticket_numbers(self) -> list[str]:
        return [t.number for t in self.tickets]

    def to_json(self) -> dict[str, Any]:
        return {
            "displayName": self.display_name,
            "contact": self.contact,
            "email": self.email,
            "ticketNumbers": self.ticket_numbers,
            "createdAt": dt_iso(self.created_at),
        }


class Ticket(Base):
    """One entry in a raffle's draw pool."""

    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    raffle_id: Mapped[str] = mapped_column(
        String(24), ForeignKey("raffles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    receipt_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("payment_receipts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    """Payment that bought this ticket; ``None`` for free tickets."""

    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    participant: Mapped["Participant"] = relationship(back_populates="tickets")
    receipt: Mapped[Optional["PaymentReceipt"]] = relationship(back_populates="tickets")

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return f"<Ticket(number='{self.number}', raffle_id='{self.raffle_id}')>"

    @classmethod
    def get_by_number(
        cls, session: Session, raffle_id: str, number: str
    ) -> Optional["Ticket"]:
        stmt = select(cls).where(cls.raffle_id == raffle_id, cls.number == number)
        return session.scalar(stmt)
