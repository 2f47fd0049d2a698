import io
import json
import random
import unittest
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest import mock

from sqlalchemy import func, select

from rafflehub import workflows
from rafflehub.auth import create_admin, issue_session_token
from rafflehub.config import Settings
from rafflehub.db.engine import get_sessionmaker, make_engine
from rafflehub.errors import (
    AlreadyClosedError,
    ArtifactRenderError,
    AuthenticationError,
    AuthorizationError,
    InvalidSignatureError,
    NotFoundError,
    PaymentVerificationError,
    PersistenceError,
    RaffleClosedError,
    ValidationError,
)
from rafflehub.models import Admin, Base, PaymentReceipt, Ticket
from rafflehub.payments import PaymentVerification, PaystackClient, compute_signature
from rafflehub.service import IssuedTicketDocument, PaymentIntent, RaffleService

PAYSTACK_SECRET = "sk_test_webhook_secret"
FRONTEND_URL = "https://raffles.example.com"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+pysqlite:///:memory:",
        jwt_secret="service-test-jwt",
        paystack_secret=PAYSTACK_SECRET,
        frontend_url=FRONTEND_URL,
    )
    values.update(overrides)
    return Settings(**values)


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class DummyGateway(PaystackClient):
    def __init__(self, verifications: Optional[dict] = None, error: Optional[Exception] = None):
        self.verifications = verifications or {}
        self.error = error
        self.calls: list[str] = []

    def verify_transaction(self, reference: str) -> PaymentVerification:
        self.calls.append(reference)
        if self.error is not None:
            raise self.error
        try:
            return self.verifications[reference]
        except KeyError:
            raise PaymentVerificationError(
                "Payment not successful: Transaction reference not found"
            ) from None


def failing_renderer(*_args, **_kwargs):
    raise RuntimeError("renderer exploded")


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)
        self.gateway = DummyGateway()
        self.clock = Clock()
        self.service = self.make_service()

        with self.Session.begin() as session:
            create_admin(session, "organizer", "s3cret-pass", email="org@example.com")
        self.session_token = self.service.login("organizer", "s3cret-pass")

    def tearDown(self):
        self.engine.dispose()

    def make_service(self, **kwargs) -> RaffleService:
        options = dict(gateway=self.gateway, rng=random.Random(5), clock=self.clock)
        options.update(kwargs)
        return RaffleService(make_settings(), self.Session, **options)

    def create_raffle(self, **overrides):
        form = {
            "title": "Library Fundraiser",
            "prizeTypes": ["cash"],
            "cashPrize": 1000,
            "ticketPrice": 5,
            "endTime": (self.clock.now + timedelta(days=1)).isoformat(),
        }
        form.update(overrides)
        return self.service.create_raffle(self.session_token, form)

    def pay(self, raffle_id: str, reference: str, amount_minor: int, currency: str = "GHS", **metadata):
        self.gateway.verifications[reference] = PaymentVerification(
            reference=reference,
            amount_minor=amount_minor,
            currency=currency,
            metadata={"raffleId": raffle_id, **metadata},
        )

    def webhook_body(self, raffle_id: str, reference: str, amount: int, **metadata) -> bytes:
        event = {
            "event": "charge.success",
            "data": {
                "reference": reference,
                "amount": amount,
                "currency": "GHS",
                "status": "success",
                "metadata": {
                    "raffleId": raffle_id,
                    "displayName": "Webhook Buyer",
                    "contact": "0240000000",
                    **metadata,
                },
            },
        }
        return json.dumps(event, separators=(",", ":")).encode()

    def ticket_count(self) -> int:
        with self.Session() as session:
            return session.scalar(select(func.count(Ticket.id)))


class AdminAndCreationTests(ServiceTestCase):
    def test_login_returns_usable_token(self):
        created = self.create_raffle()
        self.assertEqual(len(created.creator_secret), 32)
        self.assertEqual(set(created.to_json()), {"id", "creatorSecret"})

    def test_login_rejects_bad_password(self):
        with self.assertRaises(AuthenticationError):
            self.service.login("organizer", "wrong")

    def test_create_requires_session(self):
        with self.assertRaises(AuthenticationError):
            self.service.create_raffle(None, {"title": "x"})
        with self.assertRaises(AuthenticationError):
            self.service.create_raffle("garbage", {"title": "x"})

    def test_create_with_expired_session(self):
        with self.Session() as session:
            admin = Admin.get_by_username(session, "organizer")
            stale = issue_session_token(
                admin, "service-test-jwt", 60, now=datetime.now(timezone.utc) - timedelta(hours=1)
            )
        with self.assertRaises(AuthenticationError):
            self.service.create_raffle(stale, {"title": "x"})

    def test_created_raffle_is_listed_without_secret(self):
        created = self.create_raffle()
        listed = self.service.list_raffles()
        self.assertEqual([r["id"] for r in listed], [created.id])
        self.assertNotIn(created.creator_secret, json.dumps(listed))
        self.assertEqual(listed[0]["createdBy"], "organizer")

    def test_list_is_newest_first(self):
        first = self.create_raffle(title="First")
        self.clock.advance(minutes=1)
        second = self.create_raffle(title="Second")
        self.assertEqual([r["id"] for r in self.service.list_raffles()], [second.id, first.id])

    def test_invalid_form_stores_nothing(self):
        with self.assertRaises(ValidationError):
            self.create_raffle(ticketPrice=-5)
        self.assertEqual(self.service.list_raffles(), [])

    def test_get_missing_raffle(self):
        with self.assertRaises(NotFoundError):
            self.service.get_raffle("does-not-exist")


class FreeTicketTests(ServiceTestCase):
    def test_free_raffle_issues_pdf_immediately(self):
        raffle = self.create_raffle(ticketPrice=0)
        result = self.service.init_payment(raffle.id, {"displayName": "Alice", "contact": "0200000001"})

        self.assertIsInstance(result, IssuedTicketDocument)
        self.assertEqual(result.content_type, "application/pdf")
        self.assertTrue(result.content.startswith(b"%PDF"))
        self.assertEqual(len(result.ticket_numbers), 1)
        self.assertEqual(result.ticket_number_header, result.ticket_numbers[0])

        data = self.service.get_raffle(raffle.id)
        self.assertEqual(data["participants"][0]["displayName"], "Alice")
        self.assertEqual(data["participants"][0]["ticketNumbers"], list(result.ticket_numbers))

    def test_free_raffle_quantity_returns_archive(self):
        raffle = self.create_raffle(ticketPrice=0)
        result = self.service.init_payment(
            raffle.id, {"displayName": "Alice", "contact": "0200000001", "quantity": 3}
        )
        self.assertEqual(result.content_type, "application/zip")
        self.assertEqual(len(result.ticket_numbers), 3)
        self.assertEqual(result.ticket_number_header.count(","), 2)
        with zipfile.ZipFile(io.BytesIO(result.content)) as zf:
            self.assertEqual(len(zf.namelist()), 3)

    def test_ticket_lookup(self):
        raffle = self.create_raffle(ticketPrice=0)
        number = self.service.init_payment(
            raffle.id, {"displayName": "Alice", "contact": "0200000001"}
        ).ticket_numbers[0]

        info = self.service.get_ticket(raffle.id, number)
        self.assertEqual(info["participant"]["displayName"], "Alice")
        self.assertEqual(info["ticketNumber"], number)
        self.assertFalse(info["isWinner"])
        self.assertNotIn("participants", info["raffle"])

        with self.assertRaises(NotFoundError):
            self.service.get_ticket(raffle.id, "0000000000000000")

    def test_closed_raffle_issues_nothing(self):
        raffle = self.create_raffle(ticketPrice=0)
        self.clock.advance(days=2)
        with self.assertRaises(RaffleClosedError):
            self.service.init_payment(raffle.id, {"displayName": "Late", "contact": "1"})
        self.assertEqual(self.ticket_count(), 0)

    def test_missing_holder_fields(self):
        raffle = self.create_raffle(ticketPrice=0)
        with self.assertRaises(ValidationError):
            self.service.init_payment(raffle.id, {"contact": "1"})

    def test_unknown_raffle(self):
        with self.assertRaises(NotFoundError):
            self.service.init_payment("nope", {"displayName": "Alice", "contact": "1"})


class PaidTicketTests(ServiceTestCase):
    holder = {"displayName": "Bob", "contact": "0200000002", "email": "bob@example.com"}

    def test_paid_raffle_returns_payment_intent(self):
        raffle = self.create_raffle(ticketPrice="2.50")
        intent = self.service.init_payment(raffle.id, {**self.holder, "quantity": 2})
        self.assertIsInstance(intent, PaymentIntent)
        body = intent.to_json()
        self.assertEqual(body["amount"], 500)
        self.assertEqual(body["currency"], "GHS")
        self.assertEqual(body["metadata"]["raffleId"], raffle.id)
        self.assertEqual(body["metadata"]["quantity"], 2)
        self.assertEqual(self.ticket_count(), 0)

    def test_verified_payment_issues_ticket(self):
        raffle = self.create_raffle()
        self.pay(raffle.id, "ref-1", 500)
        document = self.service.verify_payment(raffle.id, {**self.holder, "reference": "ref-1"})

        self.assertFalse(document.duplicate)
        self.assertEqual(self.gateway.calls, ["ref-1"])
        info = self.service.get_ticket(raffle.id, document.ticket_numbers[0])
        self.assertEqual(info["participant"]["email"], "bob@example.com")

        with self.Session() as session:
            receipt = PaymentReceipt.get_by_reference(session, "ref-1")
            self.assertEqual(receipt.channel, "client")
            self.assertEqual(receipt.amount_minor, 500)

    def test_unverified_payment_issues_nothing(self):
        raffle = self.create_raffle()
        with self.assertRaises(PaymentVerificationError):
            self.service.verify_payment(raffle.id, {**self.holder, "reference": "unknown"})
        self.assertEqual(self.ticket_count(), 0)

    def test_gateway_timeout_issues_nothing(self):
        raffle = self.create_raffle()
        self.gateway.error = PaymentVerificationError("Payment provider timed out")
        with self.assertRaises(PaymentVerificationError):
            self.service.verify_payment(raffle.id, {**self.holder, "reference": "ref-t"})
        self.assertEqual(self.ticket_count(), 0)

    def test_reference_required(self):
        raffle = self.create_raffle()
        with self.assertRaises(ValidationError):
            self.service.verify_payment(raffle.id, self.holder)
        self.assertEqual(self.gateway.calls, [])

    def test_short_payment_rejected(self):
        raffle = self.create_raffle()
        self.pay(raffle.id, "ref-short", 500)
        with self.assertRaises(PaymentVerificationError):
            self.service.verify_payment(
                raffle.id, {**self.holder, "reference": "ref-short", "quantity": 2}
            )
        self.assertEqual(self.ticket_count(), 0)

    def test_wrong_currency_rejected(self):
        raffle = self.create_raffle()
        self.pay(raffle.id, "ref-ngn", 500, currency="NGN")
        with self.assertRaises(PaymentVerificationError):
            self.service.verify_payment(raffle.id, {**self.holder, "reference": "ref-ngn"})

    def test_payment_for_other_raffle_rejected(self):
        raffle = self.create_raffle()
        other = self.create_raffle(title="Other")
        self.pay(other.id, "ref-other", 500)
        with self.assertRaises(PaymentVerificationError) as ctx:
            self.service.verify_payment(raffle.id, {**self.holder, "reference": "ref-other"})
        self.assertEqual(ctx.exception.message, "Payment was made for a different raffle")

    def test_same_reference_twice_returns_same_tickets(self):
        raffle = self.create_raffle()
        self.pay(raffle.id, "ref-dup", 1000)
        fields = {**self.holder, "reference": "ref-dup", "quantity": 2}

        first = self.service.verify_payment(raffle.id, fields)
        second = self.service.verify_payment(raffle.id, fields)

        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(first.ticket_numbers, second.ticket_numbers)
        self.assertEqual(self.ticket_count(), 2)

    def test_payment_after_end_time_rejected(self):
        raffle = self.create_raffle()
        self.pay(raffle.id, "ref-late", 500)
        self.clock.advance(days=2)
        with self.assertRaises(RaffleClosedError):
            self.service.verify_payment(raffle.id, {**self.holder, "reference": "ref-late"})
        self.assertEqual(self.ticket_count(), 0)

    def test_quantity_two_doubles_draw_weight(self):
        raffle = self.create_raffle()
        self.pay(raffle.id, "ref-two", 1000)
        self.service.verify_payment(raffle.id, {**self.holder, "reference": "ref-two", "quantity": 2})
        data = self.service.get_raffle(raffle.id)
        self.assertEqual(data["ticketCount"], 2)
        self.assertEqual(data["participantCount"], 1)


class WebhookTests(ServiceTestCase):
    def signed(self, body: bytes) -> str:
        return compute_signature(PAYSTACK_SECRET, body)

    def test_valid_webhook_issues_ticket(self):
        raffle = self.create_raffle()
        body = self.webhook_body(raffle.id, "ref-wh", 500)
        outcome = self.service.handle_webhook(body, self.signed(body))

        self.assertEqual(outcome.action, "issued")
        self.assertEqual(len(outcome.ticket_numbers), 1)
        info = self.service.get_ticket(raffle.id, outcome.ticket_numbers[0])
        self.assertEqual(info["participant"]["displayName"], "Webhook Buyer")

        with self.Session() as session:
            self.assertEqual(PaymentReceipt.get_by_reference(session, "ref-wh").channel, "webhook")

    def test_tampered_body_rejected(self):
        raffle = self.create_raffle()
        body = self.webhook_body(raffle.id, "ref-wh", 500)
        signature = self.signed(body)
        tampered = body.replace(b'"amount":500', b'"amount":900')
        with self.assertRaises(InvalidSignatureError):
            self.service.handle_webhook(tampered, signature)
        with self.assertRaises(InvalidSignatureError):
            self.service.handle_webhook(body, None)
        self.assertEqual(self.ticket_count(), 0)

    def test_other_events_ignored(self):
        body = json.dumps({"event": "transfer.success", "data": {}}).encode()
        outcome = self.service.handle_webhook(body, self.signed(body))
        self.assertEqual(outcome.action, "ignored")

    def test_webhook_then_client_verification_issue_once(self):
        raffle = self.create_raffle()
        body = self.webhook_body(raffle.id, "ref-both", 500)
        outcome = self.service.handle_webhook(body, self.signed(body))

        self.pay(raffle.id, "ref-both", 500)
        document = self.service.verify_payment(
            raffle.id, {"displayName": "Webhook Buyer", "contact": "0240000000", "reference": "ref-both"}
        )
        self.assertTrue(document.duplicate)
        self.assertEqual(document.ticket_numbers, outcome.ticket_numbers)
        self.assertEqual(self.ticket_count(), 1)

    def test_replayed_webhook_is_duplicate(self):
        raffle = self.create_raffle()
        body = self.webhook_body(raffle.id, "ref-replay", 500)
        first = self.service.handle_webhook(body, self.signed(body))
        second = self.service.handle_webhook(body, self.signed(body))
        self.assertEqual(second.action, "duplicate")
        self.assertEqual(first.ticket_numbers, second.ticket_numbers)

    def test_business_rejection_is_acknowledged(self):
        raffle = self.create_raffle()
        body = self.webhook_body(raffle.id, "ref-low", 100)
        outcome = self.service.handle_webhook(body, self.signed(body))
        self.assertEqual(outcome.action, "rejected")
        self.assertIn("less than the expected", outcome.reason)

        body = self.webhook_body("missing-raffle", "ref-missing", 500)
        self.assertEqual(self.service.handle_webhook(body, self.signed(body)).action, "rejected")
        self.assertEqual(self.ticket_count(), 0)

    def test_malformed_json_rejected(self):
        body = b"not json"
        with self.assertRaises(ValidationError):
            self.service.handle_webhook(body, self.signed(body))


class FailureTests(ServiceTestCase):
    def test_qr_failure_issues_nothing(self):
        service = self.make_service(qr_renderer=failing_renderer)
        raffle = self.create_raffle(ticketPrice=0)
        with self.assertRaises(ArtifactRenderError):
            service.init_payment(raffle.id, {"displayName": "Alice", "contact": "1"})
        self.assertEqual(self.ticket_count(), 0)

    def test_pdf_failure_keeps_issued_ticket(self):
        service = self.make_service(pdf_renderer=failing_renderer)
        raffle = self.create_raffle(ticketPrice=0)
        with self.assertRaises(ArtifactRenderError) as ctx:
            service.init_payment(raffle.id, {"displayName": "Alice", "contact": "1"})
        self.assertTrue(ctx.exception.message.startswith("PDF generation failed"))

        data = self.service.get_raffle(raffle.id)
        self.assertEqual(data["ticketCount"], 1)
        number = data["participants"][0]["ticketNumbers"][0]
        document = self.service.ticket_document(raffle.id, number)
        self.assertTrue(document.content.startswith(b"%PDF"))

    def test_storage_failure_issues_nothing(self):
        raffle = self.create_raffle(ticketPrice=0)
        with self.engine.begin() as conn:
            Ticket.__table__.drop(conn)
        with self.assertRaises(PersistenceError) as ctx:
            self.service.init_payment(raffle.id, {"displayName": "Alice", "contact": "1"})
        self.assertEqual(ctx.exception.message, "Failed to generate ticket")


class ClosureTests(ServiceTestCase):
    def issue_free(self, raffle_id: str, name: str, quantity: int = 1):
        return self.service.init_payment(
            raffle_id, {"displayName": name, "contact": "1", "quantity": quantity}
        ).ticket_numbers

    def test_close_draws_winner_and_stops_issuance(self):
        raffle = self.create_raffle(ticketPrice=0)
        tickets = self.issue_free(raffle.id, "Alice", 2) + self.issue_free(raffle.id, "Bob")

        outcome = self.service.close_raffle(raffle.id, raffle.creator_secret)
        self.assertIn(outcome.winner, tickets)
        self.assertEqual(outcome.to_json(), {"winner": outcome.winner})

        data = self.service.get_raffle(raffle.id)
        self.assertEqual(data["winner"], outcome.winner)
        self.assertIsNotNone(data["closedAt"])
        self.assertTrue(self.service.get_ticket(raffle.id, outcome.winner)["isWinner"])

        with self.assertRaises(RaffleClosedError):
            self.issue_free(raffle.id, "Late")

    def test_close_twice(self):
        raffle = self.create_raffle(ticketPrice=0)
        self.issue_free(raffle.id, "Alice")
        first = self.service.close_raffle(raffle.id, raffle.creator_secret)
        with self.assertRaises(AlreadyClosedError):
            self.service.close_raffle(raffle.id, raffle.creator_secret)
        self.assertEqual(self.service.get_raffle(raffle.id)["winner"], first.winner)

    def test_close_without_tickets(self):
        raffle = self.create_raffle()
        self.assertIsNone(self.service.close_raffle(raffle.id, raffle.creator_secret).winner)

    def test_close_sets_end_time_to_now(self):
        raffle = self.create_raffle(ticketPrice=0)
        tickets = (
            self.issue_free(raffle.id, "Alice")
            + self.issue_free(raffle.id, "Bob")
            + self.issue_free(raffle.id, "Carol")
        )
        self.clock.advance(hours=1)

        outcome = self.service.close_raffle(raffle.id, raffle.creator_secret)
        self.assertIn(outcome.winner, tickets)

        data = self.service.get_raffle(raffle.id)
        self.assertEqual(data["endTime"], self.clock.now.isoformat())
        self.assertEqual(data["closedAt"], self.clock.now.isoformat())
        self.assertEqual(len(data["participants"]), 3)

    def test_wrong_secret(self):
        raffle = self.create_raffle(ticketPrice=0)
        self.issue_free(raffle.id, "Alice")
        self.issue_free(raffle.id, "Bob", 2)
        before = self.service.get_raffle(raffle.id)

        self.clock.advance(hours=1)
        with self.assertRaises(AuthorizationError):
            self.service.close_raffle(raffle.id, "wrong")
        with self.assertRaises(AuthorizationError):
            self.service.close_raffle("missing", raffle.creator_secret)

        after = self.service.get_raffle(raffle.id)
        self.assertIsNone(after["closedAt"])
        self.assertIsNone(after["winner"])
        self.assertEqual(after["endTime"], before["endTime"])
        self.assertEqual(after["participants"], before["participants"])

    def test_issuance_holds_shared_lock_on_raffle(self):
        raffle = self.create_raffle(ticketPrice=0)
        with mock.patch(
            "rafflehub.service.workflows.get_raffle", wraps=workflows.get_raffle
        ) as get_raffle:
            self.issue_free(raffle.id, "Alice")
        get_raffle.assert_any_call(mock.ANY, raffle.id, lock=True)

    def test_update_and_delete(self):
        raffle = self.create_raffle()
        updated = self.service.update_raffle(raffle.id, raffle.creator_secret, {"title": "New title"})
        self.assertEqual(updated["title"], "New title")
        self.assertNotIn("creatorSecret", updated)

        with self.assertRaises(AuthorizationError):
            self.service.delete_raffle(raffle.id, "wrong")
        self.service.delete_raffle(raffle.id, raffle.creator_secret)
        with self.assertRaises(NotFoundError):
            self.service.get_raffle(raffle.id)


if __name__ == "__main__":
    unittest.main()
