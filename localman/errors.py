# localman/errors.py
from flask import jsonify


class LocalmanError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_response(self):
        return jsonify({"error": self.message}), self.status_code


class ConfigError(LocalmanError):
    """Relay/project not found or invalid user input; raised before a cycle starts."""


class NotFound(LocalmanError):
    status_code = 404


class StorageError(LocalmanError):
    status_code = 500


class RemoteError(LocalmanError):
    """Broker answered non-2xx, timed out or could not be reached."""

    status_code = 502

    def __init__(self, status: int | None, message: str):
        super().__init__(message)
        self.status = status

    def __str__(self):
        if self.status is None:
            return f"Broker error: {self.message}"
        return f"Broker error {self.status}: {self.message}"


class ForwardError(LocalmanError):
    status_code = 502


def register_error_handlers(app):
    @app.errorhandler(LocalmanError)
    def _handle_localman_error(exc):
        return exc.to_response()
