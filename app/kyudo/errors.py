"""
Error taxonomy shared by every JSON endpoint.

Services raise these; the handlers registered in ``register_error_handlers`` turn
them into ``{"error": message}`` bodies with the matching status code.
"""
from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import Flask, current_app, g, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 500
    default_message = "internal error"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ApiError):
    status_code = 400
    default_message = "invalid request"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "unauthorized"


class Forbidden(ApiError):
    status_code = 403
    default_message = "forbidden"


class NotFound(ApiError):
    status_code = 404
    default_message = "not found"


class StorageError(ApiError):
    status_code = 500
    default_message = "storage error"


def _rollback_request_session() -> None:
    s = getattr(g, "db_session", None)
    if s is not None:
        s.rollback()


def storage_errors(message: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Wrap a handler so storage failures abort the whole operation with a generic 500.
    Nothing is retried; the caller has to re-issue the request.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as e:
                _rollback_request_session()
                current_app.logger.exception(
                    "%s: storage failure in %s (request_id=%s)",
                    message,
                    fn.__name__,
                    getattr(g, "request_id", None),
                )
                raise StorageError(message) from e

        return wrapped

    return decorator


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        if e.status_code == 403:
            app.logger.warning(
                "Forbidden: %s missing_permission=%s request_id=%s",
                e.message,
                getattr(g, "missing_permission", None),
                getattr(g, "request_id", None),
            )
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def _storage_error(e: SQLAlchemyError):
        _rollback_request_session()
        app.logger.exception("Unhandled storage error (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "storage error"}), 500

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"error": (e.name or "error").lower()}), e.code or 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal error"}), 500
