from __future__ import annotations

import logging
import uuid
from typing import Optional

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from ..config import Settings
from ..errors import InvalidSignatureError, RaffleError
from ..service import RaffleService
from .routes import api

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
EXPOSED_HEADERS = "X-Ticket-Number, X-Request-ID, Content-Disposition"


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[RaffleService] = None,
) -> Flask:
    """Build the HTTP app around a :class:`RaffleService`.

    ``settings`` is read from the environment when omitted, and the service
    is built from it (including the startup database check).
    """
    if service is None:
        settings = settings or Settings.from_env()
        service = RaffleService.from_settings(settings)
    settings = service.settings

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES
    app.json.sort_keys = False
    app.extensions["rafflehub"] = service

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        # log the matched rule, not the path: close/edit URLs carry the creator secret
        rule = request.url_rule.rule if request.url_rule is not None else "<unmatched>"
        logger.info("%s %s", request.method, rule)

    @app.after_request
    def _tag_response(response):
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")
        response.headers["Access-Control-Expose-Headers"] = EXPOSED_HEADERS
        return response

    @app.errorhandler(RaffleError)
    def _handle_raffle_error(err: RaffleError):
        if isinstance(err, InvalidSignatureError):
            logger.warning("Security: %s from %s", err.message, request.remote_addr)
        elif err.status_code >= 500:
            logger.error("%s: %s", type(err).__name__, err.message)
        return jsonify(err.to_json()), err.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_error(err: HTTPException):
        return (
            jsonify(
                {
                    "error": err.description,
                    "code": (err.name or "error").lower().replace(" ", "_"),
                }
            ),
            err.code or 500,
        )

    @app.errorhandler(Exception)
    def _handle_exception(err: Exception):
        rid = getattr(g, "request_id", "")
        logger.exception("Unhandled error (request_id=%s): %s", rid, err)
        return (
            jsonify(
                {
                    "error": "Internal server error",
                    "code": "internal_error",
                    "request_id": rid,
                }
            ),
            500,
        )

    app.register_blueprint(api, url_prefix="/api")

    @app.get("/")
    def index():
        return jsonify({"message": "RaffleHub backend running", "health": "/api/health"})

    logger.debug("App created for frontend %s", settings.frontend_url)
    return app
