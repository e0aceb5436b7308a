"""Session error types."""
from __future__ import annotations


class SessionError(Exception):
    pass


class LoadFailure(SessionError):
    """Model could not be made ready: resolution or engine load failed."""


class ResolutionError(LoadFailure):
    """A model reference could not be turned into a readable source."""


class GenerationFailure(SessionError):
    """The engine reported a failure while a generation was in flight."""


class EngineError(SessionError):
    """Raised by engine adapters for misuse of handles or missing models."""
