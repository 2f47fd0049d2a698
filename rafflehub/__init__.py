"""Online raffles with payment-triggered ticket issuance."""

__version__ = "0.1.0"
