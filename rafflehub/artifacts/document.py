"""Printable ticket documents rendered with ReportLab."""

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from reportlab.lib.colors import HexColor, black
from reportlab.lib.pagesizes import A5
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

PDF_CONTENT_TYPE = "application/pdf"
ZIP_CONTENT_TYPE = "application/zip"


@dataclass(frozen=True)
class TicketDocumentData:
    """Everything printed on one ticket."""

    raffle_id: str
    raffle_title: str
    ticket_number: str
    display_name: str
    contact: str
    qr_png: bytes
    end_time: Optional[datetime] = None

    @property
    def filename(self) -> str:
        return f"ticket-{self.ticket_number}.pdf"


def render_ticket_pdf(data: TicketDocumentData) -> bytes:
    """Render a single-page ticket with its metadata and QR code."""
    if not data.qr_png:
        raise ValueError("QR code image is required")

    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A5)
    width, height = A5
    margin_x = 15 * mm
    y = height - 20 * mm

    pdf.setTitle(f"Raffle Ticket {data.ticket_number}")

    pdf.setFont("Helvetica-Bold", 20)
    pdf.setFillColor(HexColor("#1D4ED8"))
    pdf.drawCentredString(width / 2, y, "Raffle Ticket")
    pdf.setFillColor(black)
    y -= 8 * mm
    pdf.line(margin_x, y, width - margin_x, y)
    y -= 10 * mm

    lines = [
        ("Raffle", data.raffle_title),
        ("Raffle ID", data.raffle_id),
        ("Ticket Number", data.ticket_number),
        ("Name", data.display_name),
        ("Contact", data.contact),
    ]
    if data.end_time is not None:
        lines.append(("Draw closes", data.end_time.strftime("%Y-%m-%d %H:%M UTC")))

    for label, value in lines:
        pdf.setFont("Helvetica-Bold", 11)
        pdf.drawString(margin_x, y, f"{label}:")
        pdf.setFont("Helvetica", 11)
        pdf.drawString(margin_x + 32 * mm, y, str(value)[:60])
        y -= 7 * mm

    qr_size = 45 * mm
    y -= qr_size
    pdf.drawImage(
        ImageReader(io.BytesIO(data.qr_png)),
        (width - qr_size) / 2,
        y,
        width=qr_size,
        height=qr_size,
    )
    pdf.setFont("Helvetica", 8)
    pdf.drawCentredString(width / 2, y - 5 * mm, "Scan to verify this ticket")

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def render_ticket_archive(tickets: Sequence[TicketDocumentData]) -> bytes:
    """Bundle one PDF per ticket into a ZIP archive."""
    if not tickets:
        raise ValueError("At least one ticket is required")
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for ticket in tickets:
            archive.writestr(ticket.filename, render_ticket_pdf(ticket))
    return buffer.getvalue()
