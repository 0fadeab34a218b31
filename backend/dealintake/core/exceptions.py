"""Custom exception classes for the ingestion worker."""


class DealIntakeException(Exception):
    """Base exception for all ingestion errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigError(DealIntakeException):
    """Raised when an operation references a source it cannot run."""


class SourceNotFoundError(ConfigError):
    """Raised when a requested source key is not in the registry."""

    def __init__(self, source_key: str):
        self.source_key = source_key
        super().__init__(f"Unknown source: {source_key}")


class SourceDisabledError(ConfigError):
    """Raised when a manual trigger targets a disabled source."""

    def __init__(self, source_key: str):
        self.source_key = source_key
        super().__init__(f"Source {source_key} is not enabled")


class FetchError(DealIntakeException):
    """Raised when a fetcher cannot retrieve or parse its upstream."""

    def __init__(self, source_key: str, message: str):
        self.source_key = source_key
        super().__init__(f"Fetch error for {source_key}: {message}")


class PersistenceError(DealIntakeException):
    """Raised when the deal store rejects a write or query."""


class UniqueViolation(PersistenceError):
    """Raised when an insert collides with an existing (source_key, url) row."""
