"""Exception taxonomy for the ingestion pipeline."""


class IngestorError(Exception):
    """Base class for every error raised by the ingestor."""


class ConfigError(IngestorError, ValueError):
    """Required configuration is missing or malformed."""


class SourceFileError(IngestorError):
    """Transient I/O failure on the access log. Aborts the current tick only."""


class DeliveryError(IngestorError):
    """A submission to the collector failed. The in-flight batch is retried."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RegistrationError(IngestorError):
    """The orchestrator rejected registration or returned no certificate."""
