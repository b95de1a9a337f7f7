from typing import Dict, Optional

from flask import Flask, jsonify
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException


class StoreError(Exception):
    status_code = 500
    kind = "internal_error"
    default_message = "Something went wrong. Please try again later."

    def __init__(self, message: Optional[str] = None, **details):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"message": self.message, "error": self.kind}
        payload.update(
            {key: value for key, value in self.details.items() if value is not None}
        )
        return payload


class ValidationError(StoreError):
    status_code = 400
    kind = "validation_error"
    default_message = "The request could not be validated."


class Unauthenticated(StoreError):
    status_code = 401
    kind = "unauthenticated"

    MESSAGES = {
        "missing": "Access token required.",
        "invalid": "Invalid token.",
        "expired": "Token expired.",
        "malformed": "Invalid token structure.",
        "unknown_subject": "Invalid token.",
        "required": "Authentication required.",
    }

    def __init__(self, reason: str = "required", message: Optional[str] = None):
        super().__init__(message or self.MESSAGES.get(reason), reason=reason)
        self.reason = reason


class Forbidden(StoreError):
    status_code = 403
    kind = "forbidden"
    default_message = "You need additional permissions to perform this action."


class NotFound(StoreError):
    status_code = 404
    kind = "not_found"
    default_message = "Resource not found."


class ConflictError(StoreError):
    status_code = 409
    kind = "conflict"
    default_message = "A record with these details already exists."


class ExternalServiceError(StoreError):
    status_code = 502
    kind = "external_service_error"
    default_message = "An external service could not complete the request."

    def __init__(self, message: Optional[str] = None, retryable: bool = False):
        super().__init__(message, retryable=retryable)
        self.retryable = retryable
        if retryable:
            self.status_code = 503


class InternalError(StoreError):
    pass


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(StoreError)
    def handle_store_error(error: StoreError):
        if error.status_code >= 500:
            app.logger.error("%s: %s", error.kind, error.message)
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate_key(error: DuplicateKeyError):
        return jsonify(ConflictError().to_payload()), ConflictError.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return (
            jsonify({"message": error.description, "error": error.name.lower()}),
            error.code,
        )

    @app.errorhandler(PyMongoError)
    def handle_database_error(error: PyMongoError):
        app.logger.error("Database error: %s", error)
        return jsonify(InternalError().to_payload()), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception("Unhandled error: %s", error)
        return jsonify(InternalError().to_payload()), 500
