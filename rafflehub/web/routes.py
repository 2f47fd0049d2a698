from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request

from ..auth import bearer_token
from ..errors import ValidationError
from ..service import IssuedTicketDocument, RaffleService

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


def _service() -> RaffleService:
    return current_app.extensions["rafflehub"]


def _payload() -> dict[str, Any]:
    """Return the request fields from a JSON body or a form."""
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("JSON body must be an object")
        return data
    return request.form.to_dict()


def _document_response(document: IssuedTicketDocument) -> Response:
    return Response(
        document.content,
        mimetype=document.content_type,
        headers={
            "Content-Disposition": f"attachment; filename={document.filename}",
            "X-Ticket-Number": document.ticket_number_header,
        },
    )


@api.post("/admin/login")
def admin_login():
    data = _payload()
    token = _service().login(
        data.get("emailOrUsername") or "",
        data.get("password") or "",
    )
    return jsonify({"token": token})


@api.post("/raffles")
def create_raffle():
    fields = _payload()
    image_bytes = None
    image_type = None

    upload = request.files.get("prizeImage")
    if upload is not None and upload.filename:
        image_bytes = upload.read()
        image_type = upload.mimetype or "application/octet-stream"
    elif isinstance(fields.get("prizeImage"), str) and fields["prizeImage"]:
        try:
            image_bytes = base64.b64decode(fields["prizeImage"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("prizeImage must be base64 encoded", field="prizeImage") from e
        image_type = fields.get("prizeImageType") or "image/png"

    created = _service().create_raffle(
        bearer_token(request.headers.get("Authorization")),
        fields,
        prize_image=image_bytes,
        prize_image_type=image_type,
    )
    return jsonify(created.to_json()), 201


@api.get("/raffles")
def list_raffles():
    return jsonify(_service().list_raffles())


@api.get("/raffles/<raffle_id>")
def get_raffle(raffle_id: str):
    return jsonify(_service().get_raffle(raffle_id))


@api.patch("/raffles/<raffle_id>/<secret>")
def update_raffle(raffle_id: str, secret: str):
    return jsonify(_service().update_raffle(raffle_id, secret, _payload()))


@api.delete("/raffles/<raffle_id>/<secret>")
def delete_raffle(raffle_id: str, secret: str):
    _service().delete_raffle(raffle_id, secret)
    return "", 204


@api.post("/raffles/<raffle_id>/participants/init-payment")
def init_payment(raffle_id: str):
    result = _service().init_payment(raffle_id, _payload())
    if isinstance(result, IssuedTicketDocument):
        return _document_response(result)
    return jsonify(result.to_json())


@api.post("/raffles/<raffle_id>/participants/verify-payment")
def verify_payment(raffle_id: str):
    return _document_response(_service().verify_payment(raffle_id, _payload()))


@api.post("/raffles/webhook")
def payment_webhook():
    raw_body = request.get_data(cache=False)
    outcome = _service().handle_webhook(raw_body, request.headers.get("X-Paystack-Signature"))
    logger.info("Webhook %s answered with %s", outcome.event or "<none>", outcome.action)
    return jsonify({"status": outcome.action})


@api.get("/raffles/<raffle_id>/tickets/<ticket_number>")
def get_ticket(raffle_id: str, ticket_number: str):
    return jsonify(_service().get_ticket(raffle_id, ticket_number))


@api.get("/raffles/<raffle_id>/tickets/<ticket_number>/document")
def ticket_document(raffle_id: str, ticket_number: str):
    return _document_response(_service().ticket_document(raffle_id, ticket_number))


@api.post("/raffles/<raffle_id>/close/<secret>")
def close_raffle(raffle_id: str, secret: str):
    return jsonify(_service().close_raffle(raffle_id, secret).to_json())


@api.get("/health")
def health():
    healthy = _service().healthy()
    return (
        jsonify(
            {
                "status": "OK" if healthy else "DEGRADED",
                "database": "connected" if healthy else "unreachable",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ),
        200 if healthy else 503,
    )
