"""Error taxonomy for the generation pipeline.

Every error carries the HTTP status it maps to so the API layer can render
``{"error": message}`` without a per-type lookup table.
"""

from __future__ import annotations

from typing import Optional


class SpinError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SpinError):
    status_code = 400


class NotFoundError(SpinError):
    status_code = 404


class ConfigurationError(SpinError):
    pass


class ProviderError(SpinError):
    pass


class TransientProviderError(ProviderError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class GenerationFailedError(ProviderError):
    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class TruncationError(ProviderError):
    DEFAULT_MESSAGE = "Response truncated: Increase max_tokens or simplify prompt"

    def __init__(self, message: str = DEFAULT_MESSAGE) -> None:
        super().__init__(message)


class ExtractionError(SpinError):
    pass


class PersistenceError(SpinError):
    pass
