"""QR code rendering for ticket verification links."""

from __future__ import annotations

import io
from urllib.parse import quote, urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_H


def build_ticket_url(frontend_url: str, raffle_id: str, ticket_number: str) -> str:
    """Return the public page that verifies ``ticket_number`` in ``raffle_id``."""
    base = frontend_url.rstrip("/")
    query = urlencode({"ticketNumber": ticket_number})
    return f"{base}/ticket/{quote(raffle_id, safe='')}?{query}"


def render_qr_png(data: str, *, box_size: int = 10, border: int = 1) -> bytes:
    """Encode ``data`` as a PNG QR code with high error correction."""
    if not data:
        raise ValueError("QR payload must not be empty")
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
