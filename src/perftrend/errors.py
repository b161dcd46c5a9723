from __future__ import annotations


class PerftrendError(Exception):
    """Base class for every error raised by perftrend."""


class ConfigError(PerftrendError, ValueError):
    pass


class InvalidSampleError(PerftrendError, ValueError):
    pass


class CollectorClosedError(PerftrendError, RuntimeError):
    pass


class FlushError(PerftrendError, OSError):
    """A durable write failed; the records it carried are still pending."""

    def __init__(self, message: str, pending: int) -> None:
        super().__init__(message)
        self.pending = pending


class LogUnavailableError(PerftrendError, OSError):
    pass
