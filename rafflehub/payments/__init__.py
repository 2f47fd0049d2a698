"""Adapter for the external payment provider (Paystack)."""

from .paystack import (
    PaymentVerification,
    PaystackClient,
    compute_signature,
    verify_signature,
)

__all__ = [
    "PaymentVerification",
    "PaystackClient",
    "compute_signature",
    "verify_signature",
]
