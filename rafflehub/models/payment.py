"""Record of processed gateway payments, used to issue at most once per charge."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .raffle import Raffle, Ticket


class PaymentReceipt(Base):
    """One row per gateway reference that led to ticket issuance."""

    __tablename__ = "payment_receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    """Gateway transaction reference; the idempotency key."""

    raffle_id: Mapped[str] = mapped_column(
        String(24), ForeignKey("raffles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    """``"client"`` or ``"webhook"``: the path that first confirmed the charge."""

    amount_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Amount reported by the gateway in minor units (pesewas, kobo, ...)."""

    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    raffle: Mapped["Raffle"] = relationship(back_populates="receipts")
    tickets: Mapped[list["Ticket"]] = relationship(
        back_populates="receipt", order_by="Ticket.id"
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<PaymentReceipt(id={self.id}, reference='{self.reference}', "
            f"raffle_id='{self.raffle_id}', channel='{self.channel}')>"
        )

    @classmethod
    def get_by_reference(cls, session: Session, reference: str) -> Optional["PaymentReceipt"]:
        return session.scalar(select(cls).where(cls.reference == reference))
