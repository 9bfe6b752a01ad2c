"""JSON failure responses for the ClassLink login endpoint."""

import logging

from flask import Response, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

STORE_UNAVAILABLE = "ClassLink login is temporarily unavailable."
MISCONFIGURED = "ClassLink login is not configured correctly."
INTERNAL_ERROR = "An internal error occurred."


def safe_message_for(e: Exception) -> str:
    if isinstance(e, SQLAlchemyError):
        return STORE_UNAVAILABLE
    if isinstance(e, ValueError):
        return MISCONFIGURED
    return INTERNAL_ERROR


def login_error_response(
    e: Exception, status: int = 500, context: str = ""
) -> tuple[Response, int]:
    """Return a failed login verdict; log the real error server-side.

    The body keeps the login endpoint's shape so the host can treat it as a
    refusal. In Flask debug mode the exception text replaces the safe message.
    """
    logger.exception("Login error%s: %s", f" [{context}]" if context else "", e)

    msg = str(e) if current_app.debug else safe_message_for(e)
    body = {"continue": False, "user_id": None, "username": None, "error": msg}
    return jsonify(body), status
