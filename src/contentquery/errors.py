"""
Error taxonomy for the content pipeline.
Each error carries the HTTP status the API layer maps it to.
"""
from __future__ import annotations


class ContentQueryError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = str(message)
        if status_code is not None:
            self.status_code = int(status_code)


class ConfigurationError(ContentQueryError):
    """Invalid startup configuration (credentials, chunk sizes)."""


class ValidationError(ContentQueryError):
    status_code = 400


class ExtractionError(ContentQueryError):
    """Acquisition failed: bad URL scheme, fetch failure, unreadable or too-short text."""

    status_code = 422


class SessionNotFoundError(ContentQueryError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Session not found", status_code=404)
        self.session_id = str(session_id)


class AllModelsExhaustedError(ContentQueryError):
    status_code = 500

    def __init__(self, attempts: list[tuple[str, str]]):
        self.attempts = list(attempts)
        last_error = attempts[-1][1] if attempts else "no models were tried"
        super().__init__(f"All models failed. Last error: {last_error}")


class MalformedModelOutputError(ContentQueryError):
    """Model reply could not be parsed into the expected structure."""

    status_code = 502

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = str(raw or "")
