"""Raffle lifecycle orchestrator.

:class:`RaffleService` composes the raffle store, the credential verifier,
the payment gateway adapter and the artifact renderers. It owns transaction
boundaries: every public method opens its own session, and the ticket
issuance critical section is a single transaction that records the payment,
inserts the participant and its tickets, and commits before any document is
rendered.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import workflows
from .artifacts import (
    TicketDocumentData,
    build_ticket_url,
    render_qr_png,
    render_ticket_archive,
    render_ticket_pdf,
)
from .artifacts.document import PDF_CONTENT_TYPE, ZIP_CONTENT_TYPE
from .auth import authenticate, issue_session_token, verify_session_token
from .config import Settings
from .db.engine import connect_with_retry, get_sessionmaker, make_engine, ping
from .db.utils import as_utc
from .errors import (
    ArtifactRenderError,
    InvalidSignatureError,
    NotFoundError,
    PaymentVerificationError,
    PersistenceError,
    RaffleClosedError,
    RaffleError,
    ValidationError,
)
from .models import Base, PaymentReceipt, Raffle
from .models.utils import generate_ticket_numbers
from .payments import PaymentVerification, PaystackClient, verify_signature
from .validation import parse_quantity, require_text
from .workflows import TicketHolder

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"


def _minor_units(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Webhook charge amount is invalid", field="amount")
    try:
        return int(value or 0)
    except (TypeError, ValueError) as e:
        raise ValidationError("Webhook charge amount is invalid", field="amount") from e


@dataclass(frozen=True)
class CreatedRaffle:
    """Returned once at creation; the secret is never exposed again."""

    id: str
    creator_secret: str

    def to_json(self) -> dict[str, str]:
        return {"id": self.id, "creatorSecret": self.creator_secret}


@dataclass(frozen=True)
class PaymentIntent:
    """What the client needs to start a gateway checkout for a paid raffle."""

    raffle_id: str
    ticket_price: float
    amount_minor: int
    currency: str
    quantity: int
    display_name: str
    contact: str
    email: Optional[str]

    def to_json(self) -> dict[str, Any]:
        return {
            "raffleId": self.raffle_id,
            "ticketPrice": self.ticket_price,
            "amount": self.amount_minor,
            "currency": self.currency,
            "quantity": self.quantity,
            "displayName": self.display_name,
            "contact": self.contact,
            "email": self.email,
            "metadata": {
                "raffleId": self.raffle_id,
                "displayName": self.display_name,
                "contact": self.contact,
                "email": self.email,
                "quantity": self.quantity,
            },
        }


@dataclass(frozen=True)
class IssuedTicketDocument:
    """A rendered ticket (PDF) or batch of tickets (ZIP archive)."""

    raffle_id: str
    ticket_numbers: tuple[str, ...]
    content: bytes
    content_type: str
    filename: str
    duplicate: bool = False
    """``True`` when the payment had already been processed and no new ticket was issued."""

    @property
    def ticket_number_header(self) -> str:
        return ",".join(self.ticket_numbers)


@dataclass(frozen=True)
class WebhookOutcome:
    event: str
    action: str
    """``"issued"``, ``"duplicate"``, ``"ignored"`` or ``"rejected"``."""

    ticket_numbers: tuple[str, ...] = ()
    reason: Optional[str] = None


@dataclass(frozen=True)
class DrawOutcome:
    raffle_id: str
    winner: Optional[str]

    def to_json(self) -> dict[str, Optional[str]]:
        return {"winner": self.winner}


@dataclass
class _IssuedBatch:
    """Snapshot of a committed issuance, detached from any session."""

    raffle_id: str
    raffle_title: str
    end_time: Optional[datetime]
    holder: TicketHolder
    ticket_numbers: tuple[str, ...]
    qr_images: dict[str, bytes] = field(default_factory=dict)
    duplicate: bool = False


class RaffleService:
    """Entry point for every raffle operation.

    Parameters
    ----------
    settings : Settings
        Runtime configuration (signing secret, gateway secret, frontend URL).
    session_factory : sessionmaker
        Factory producing sessions bound to the raffle store.
    gateway : Optional[PaystackClient]
        Payment verification client. Built from ``settings`` when omitted.
    rng : Optional[random.Random]
        Generator used by the winner draw.
    clock : Optional[Callable[[], datetime]]
        Source of "now" (aware UTC).
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        *,
        gateway: Optional[PaystackClient] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        qr_renderer: Callable[[str], bytes] = render_qr_png,
        pdf_renderer: Callable[[TicketDocumentData], bytes] = render_ticket_pdf,
        archive_renderer: Callable[[Sequence[TicketDocumentData]], bytes] = render_ticket_archive,
        engine: Optional[Engine] = None,
    ) -> None:
        self.settings = settings
        self._Session = session_factory
        self._gateway = gateway or PaystackClient(
            settings.paystack_secret,
            base_url=settings.paystack_base_url,
            timeout=settings.paystack_timeout,
        )
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._render_qr = qr_renderer
        self._render_pdf = pdf_renderer
        self._render_archive = archive_renderer
        self._engine = engine

    @classmethod
    def from_settings(cls, settings: Settings, *, create_schema: bool = False) -> "RaffleService":
        """Connect to the store (bounded retry) and build a ready service.

        Raises
        ------
        UpstreamUnavailableError
            If the database cannot be reached after the configured number of attempts.
        """
        engine = make_engine(settings.database_url)
        connect_with_retry(
            engine, retries=settings.db_connect_retries, delay=settings.db_connect_delay
        )
        if create_schema:
            Base.metadata.create_all(engine)
        return cls(settings, get_sessionmaker(engine), engine=engine)

    def close(self) -> None:
        """Release the database engine, if this service owns one."""
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")

    def healthy(self) -> bool:
        if self._engine is None:
            return True
        return ping(self._engine)

    def _now(self) -> datetime:
        return self._clock()

    # -------- admin --------
    def login(self, identifier: str, password: str) -> str:
        """Exchange admin credentials for a signed session token."""
        with self._Session() as session:
            admin = authenticate(session, identifier, password)
            token = issue_session_token(
                admin,
                self.settings.jwt_secret,
                self.settings.session_ttl_seconds,
                now=self._now(),
            )
        logger.info("Admin %s logged in", admin.username)
        return token

    # -------- raffles --------
    def create_raffle(
        self,
        session_token: Optional[str],
        fields: Mapping[str, Any],
        prize_image: Optional[bytes] = None,
        prize_image_type: Optional[str] = None,
    ) -> CreatedRaffle:
        """Validate and persist a new raffle for the authenticated organizer."""
        claims = verify_session_token(session_token, self.settings.jwt_secret)
        raffle_fields = workflows.parse_raffle_fields(
            fields,
            prize_image=prize_image,
            prize_image_type=prize_image_type,
            now=self._now(),
        )
        try:
            with self._Session.begin() as session:
                raffle = workflows.create_raffle(
                    session,
                    claims.username,
                    raffle_fields,
                    currency=self.settings.currency,
                    now=self._now(),
                )
                created = CreatedRaffle(id=raffle.id, creator_secret=raffle.creator_secret)
        except SQLAlchemyError as e:
            logger.error("Failed to store new raffle for %s: %s", claims.username, e)
            raise PersistenceError("Failed to create raffle") from e

        logger.info("Raffle %s created by %s", created.id, claims.username)
        return created

    def list_raffles(self) -> list[dict[str, Any]]:
        """Return every raffle, newest first."""
        with self._Session() as session:
            return [r.to_json() for r in Raffle.list_newest_first(session)]

    def get_raffle(self, raffle_id: str) -> dict[str, Any]:
        with self._Session() as session:
            return workflows.get_raffle(session, raffle_id).to_json()

    def get_ticket(self, raffle_id: str, ticket_number: str) -> dict[str, Any]:
        with self._Session() as session:
            raffle, participant = workflows.get_ticket(session, raffle_id, ticket_number)
            return {
                "raffle": raffle.to_json(include_participants=False),
                "participant": participant.to_json(),
                "ticketNumber": ticket_number,
                "isWinner": raffle.winner == ticket_number,
            }

    def ticket_document(self, raffle_id: str, ticket_number: str) -> IssuedTicketDocument:
        """Re-render the document of a ticket that is already issued."""
        with self._Session() as session:
            raffle, participant = workflows.get_ticket(session, raffle_id, ticket_number)
            batch = _IssuedBatch(
                raffle_id=raffle.id,
                raffle_title=raffle.title,
                end_time=as_utc(raffle.end_time),
                holder=TicketHolder(participant.display_name, participant.contact, participant.email),
                ticket_numbers=(ticket_number,),
            )
        return self._render(batch)

    def update_raffle(self, raffle_id: str, secret: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        try:
            with self._Session.begin() as session:
                raffle = workflows.update_raffle(session, raffle_id, secret, fields, now=self._now())
                data = raffle.to_json()
        except SQLAlchemyError as e:
            logger.error("Failed to update raffle %s: %s", raffle_id, e)
            raise PersistenceError("Failed to update raffle") from e
        logger.info("Raffle %s updated (%s)", raffle_id, ", ".join(sorted(fields)))
        return data

    def delete_raffle(self, raffle_id: str, secret: str) -> None:
        try:
            with self._Session.begin() as session:
                workflows.delete_raffle(session, raffle_id, secret)
        except SQLAlchemyError as e:
            logger.error("Failed to delete raffle %s: %s", raffle_id, e)
            raise PersistenceError("Failed to delete raffle") from e
        logger.info("Raffle %s deleted", raffle_id)

    def close_raffle(self, raffle_id: str, secret: str) -> DrawOutcome:
        """Close the raffle now and draw a winner among all tickets."""
        try:
            with self._Session.begin() as session:
                raffle = workflows.close_raffle(
                    session, raffle_id, secret, rng=self._rng, now=self._now()
                )
                outcome = DrawOutcome(raffle_id=raffle.id, winner=raffle.winner)
                ticket_count = len(raffle.ticket_numbers)
        except SQLAlchemyError as e:
            logger.error("Failed to close raffle %s: %s", raffle_id, e)
            raise PersistenceError("Failed to end raffle") from e

        logger.info(
            "Raffle %s closed; winner=%s among %d tickets",
            raffle_id,
            outcome.winner,
            ticket_count,
        )
        return outcome

    # -------- ticket issuance --------
    def init_payment(
        self, raffle_id: str, fields: Mapping[str, Any]
    ) -> Union[PaymentIntent, IssuedTicketDocument]:
        """Start a purchase.

        Free raffles issue immediately and return the ticket document; paid
        raffles return the checkout details and issue nothing.
        """
        holder = TicketHolder.from_fields(fields)
        quantity = parse_quantity(fields.get("quantity"))

        with self._Session() as session:
            raffle = workflows.get_raffle(session, raffle_id)
            workflows.ensure_open(raffle, self._now())
            if not raffle.is_free:
                return PaymentIntent(
                    raffle_id=raffle.id,
                    ticket_price=float(raffle.ticket_price),
                    amount_minor=raffle.price_in_minor_units(quantity),
                    currency=raffle.currency,
                    quantity=quantity,
                    display_name=holder.display_name,
                    contact=holder.contact,
                    email=holder.email,
                )

        batch = self._issue(raffle_id, holder, quantity)
        return self._render(batch)

    def verify_payment(self, raffle_id: str, fields: Mapping[str, Any]) -> IssuedTicketDocument:
        """Client-confirmed path: verify ``fields["reference"]`` with the gateway, then issue.

        A reference that was already processed (by either path) returns the
        tickets it bought instead of issuing new ones.
        """
        reference = require_text(fields.get("reference"), "reference", max_length=100)
        holder = TicketHolder.from_fields(fields)
        quantity = parse_quantity(fields.get("quantity"))

        with self._Session() as session:
            workflows.get_raffle(session, raffle_id)

        logger.info("Verifying payment %s for raffle %s", reference, raffle_id)
        try:
            payment = self._gateway.verify_transaction(reference)
        except PaymentVerificationError as e:
            logger.warning("Payment %s not verified for raffle %s: %s", reference, raffle_id, e.message)
            raise

        meta_raffle = payment.metadata.get("raffleId")
        if meta_raffle and str(meta_raffle) != raffle_id:
            logger.warning(
                "Payment %s belongs to raffle %s, not %s", reference, meta_raffle, raffle_id
            )
            raise PaymentVerificationError("Payment was made for a different raffle")

        batch = self._issue(raffle_id, holder, quantity, payment=payment, channel="client")
        return self._render(batch)

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Webhook path: authenticate the payload, then issue on ``charge.success``.

        Business rejections (unknown raffle, closed raffle, short payment) are
        logged and acknowledged so the gateway stops retrying; storage errors
        propagate so it retries later.

        Raises
        ------
        InvalidSignatureError
            If the HMAC-SHA-512 signature does not match the raw body.
        """
        if not verify_signature(self.settings.paystack_secret, raw_body, signature):
            logger.warning("Rejected payment webhook with an invalid signature")
            raise InvalidSignatureError("Invalid Paystack signature")

        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_name = str(event.get("event") or "")
        if event_name != CHARGE_SUCCESS:
            logger.info("Acknowledged webhook event %s without action", event_name or "<none>")
            return WebhookOutcome(event=event_name, action="ignored")

        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        reference = str(data.get("reference") or "")
        raffle_id = str(metadata.get("raffleId") or "")

        try:
            if not reference:
                raise ValidationError("Webhook charge has no reference", field="reference")
            holder = TicketHolder.from_fields(metadata)
            quantity = parse_quantity(metadata.get("quantity"))
            payment = PaymentVerification(
                reference=reference,
                amount_minor=_minor_units(data.get("amount")),
                currency=str(data.get("currency") or "").upper(),
                metadata=metadata,
            )
            batch = self._issue(raffle_id, holder, quantity, payment=payment, channel="webhook")
        except (ValidationError, NotFoundError, RaffleClosedError, PaymentVerificationError) as e:
            logger.error(
                "Webhook charge %s for raffle %s not issued: %s",
                reference or "<none>",
                raffle_id or "<none>",
                e.message,
            )
            return WebhookOutcome(event=event_name, action="rejected", reason=e.message)

        return WebhookOutcome(
            event=event_name,
            action="duplicate" if batch.duplicate else "issued",
            ticket_numbers=batch.ticket_numbers,
        )

    def _issue(
        self,
        raffle_id: str,
        holder: TicketHolder,
        quantity: int,
        *,
        payment: Optional[PaymentVerification] = None,
        channel: Optional[str] = None,
    ) -> _IssuedBatch:
        """Durably issue ``quantity`` tickets; nothing is rendered here.

        When this returns, the participant and tickets are committed and
        visible to readers.
        """
        ticket_numbers: tuple[str, ...] = ()
        try:
            with self._Session.begin() as session:
                raffle = workflows.get_raffle(session, raffle_id, lock=True)

                if payment is not None:
                    existing = PaymentReceipt.get_by_reference(session, payment.reference)
                    if existing is not None:
                        return self._existing_batch(session, existing)

                now = self._now()
                workflows.ensure_open(raffle, now)
                if payment is not None:
                    self._check_amount(raffle, payment, quantity)

                ticket_numbers = tuple(generate_ticket_numbers(quantity, session))
                qr_images = self._render_qr_images(raffle.id, ticket_numbers)

                receipt = None
                if payment is not None:
                    receipt = workflows.record_receipt(
                        session,
                        raffle,
                        payment.reference,
                        channel or "client",
                        amount_minor=payment.amount_minor,
                        currency=payment.currency or None,
                    )
                workflows.append_tickets(session, raffle, holder, ticket_numbers, receipt=receipt)

                batch = _IssuedBatch(
                    raffle_id=raffle.id,
                    raffle_title=raffle.title,
                    end_time=as_utc(raffle.end_time),
                    holder=holder,
                    ticket_numbers=ticket_numbers,
                    qr_images=qr_images,
                )
        except IntegrityError as e:
            if payment is not None:
                duplicate = self._load_existing_batch(payment.reference)
                if duplicate is not None:
                    logger.info(
                        "Payment %s was processed concurrently; returning its tickets",
                        payment.reference,
                    )
                    return duplicate
            logger.error(
                "Failed to persist tickets %s for raffle %s: %s",
                ",".join(ticket_numbers),
                raffle_id,
                e,
            )
            raise PersistenceError("Failed to generate ticket") from e
        except SQLAlchemyError as e:
            logger.error(
                "Failed to persist tickets %s for raffle %s: %s",
                ",".join(ticket_numbers),
                raffle_id,
                e,
            )
            raise PersistenceError("Failed to generate ticket") from e

        logger.info(
            "Issued tickets %s in raffle %s%s",
            ",".join(batch.ticket_numbers),
            batch.raffle_id,
            f" for payment {payment.reference} via {channel}" if payment is not None else "",
        )
        return batch

    def _check_amount(self, raffle: Raffle, payment: PaymentVerification, quantity: int) -> None:
        expected = raffle.price_in_minor_units(quantity)
        if payment.currency and payment.currency != raffle.currency.upper():
            raise PaymentVerificationError(
                f"Payment currency {payment.currency} does not match {raffle.currency}"
            )
        if payment.amount_minor < expected:
            raise PaymentVerificationError(
                f"Payment amount {payment.amount_minor} is less than the expected {expected}"
            )

    def _existing_batch(self, session: Session, receipt: PaymentReceipt) -> _IssuedBatch:
        tickets = list(receipt.tickets)
        if not tickets:
            raise PersistenceError("Payment was recorded without tickets")
        participant = tickets[0].participant
        raffle = receipt.raffle
        return _IssuedBatch(
            raffle_id=raffle.id,
            raffle_title=raffle.title,
            end_time=as_utc(raffle.end_time),
            holder=TicketHolder(participant.display_name, participant.contact, participant.email),
            ticket_numbers=tuple(t.number for t in tickets),
            duplicate=True,
        )

    def _load_existing_batch(self, reference: str) -> Optional[_IssuedBatch]:
        with self._Session() as session:
            receipt = PaymentReceipt.get_by_reference(session, reference)
            if receipt is None:
                return None
            return self._existing_batch(session, receipt)

    def _render_qr_images(self, raffle_id: str, ticket_numbers: Sequence[str]) -> dict[str, bytes]:
        images = {}
        for number in ticket_numbers:
            url = build_ticket_url(self.settings.frontend_url, raffle_id, number)
            try:
                images[number] = self._render_qr(url)
            except Exception as e:
                logger.error("QR rendering failed for ticket %s in raffle %s: %s", number, raffle_id, e)
                raise ArtifactRenderError(f"QR code generation failed: {e}") from e
        return images

    def _render(self, batch: _IssuedBatch) -> IssuedTicketDocument:
        """Render the document of a committed batch.

        Raises
        ------
        ArtifactRenderError
            If rendering fails. The tickets stay issued and can be fetched
            again with :meth:`ticket_document`.
        """
        try:
            qr_images = batch.qr_images or self._render_qr_images(
                batch.raffle_id, batch.ticket_numbers
            )
            documents = [
                TicketDocumentData(
                    raffle_id=batch.raffle_id,
                    raffle_title=batch.raffle_title,
                    ticket_number=number,
                    display_name=batch.holder.display_name,
                    contact=batch.holder.contact,
                    qr_png=qr_images[number],
                    end_time=batch.end_time,
                )
                for number in batch.ticket_numbers
            ]
            if len(documents) == 1:
                content = self._render_pdf(documents[0])
                content_type = PDF_CONTENT_TYPE
                filename = documents[0].filename
            else:
                content = self._render_archive(documents)
                content_type = ZIP_CONTENT_TYPE
                filename = f"tickets-{batch.raffle_id}.zip"
        except RaffleError:
            raise
        except Exception as e:
            logger.error(
                "Ticket document rendering failed for tickets %s in raffle %s "
                "(tickets are issued; re-fetch the document): %s",
                ",".join(batch.ticket_numbers),
                batch.raffle_id,
                e,
            )
            raise ArtifactRenderError(f"PDF generation failed: {e}") from e

        return IssuedTicketDocument(
            raffle_id=batch.raffle_id,
            ticket_numbers=batch.ticket_numbers,
            content=content,
            content_type=content_type,
            filename=filename,
            duplicate=batch.duplicate,
        )
