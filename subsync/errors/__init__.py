from flask import jsonify
from werkzeug.exceptions import HTTPException
import logging

from subsync.errors.domain import (
    DuplicateEvent,
    InvalidSignature,
    LockTimeout,
    ReconciliationError,
    StorageFailure,
    UnknownProvider,
    UnresolvedAccount,
    VerifierUnavailable,
)

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        """
        Handles known HTTP errors (404, 405, etc.)
        """
        response = {
            "error": e.name,
            "message": e.description,
            "status_code": e.code,
        }
        return jsonify(response), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        """
        Handles all unexpected server errors
        Prevents stack trace leakage in production
        """
        logger.exception("Unhandled exception")

        response = {
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again later.",
            "status_code": 500,
        }
        return jsonify(response), 500


__all__ = [
    "DuplicateEvent",
    "InvalidSignature",
    "LockTimeout",
    "ReconciliationError",
    "StorageFailure",
    "UnknownProvider",
    "UnresolvedAccount",
    "VerifierUnavailable",
    "register_error_handlers",
]
