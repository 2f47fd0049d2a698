"""Pure renderers for ticket artifacts: QR images and printable documents."""

from .document import TicketDocumentData, render_ticket_archive, render_ticket_pdf
from .qr import build_ticket_url, render_qr_png

__all__ = [
    "TicketDocumentData",
    "build_ticket_url",
    "render_qr_png",
    "render_ticket_archive",
    "render_ticket_pdf",
]
