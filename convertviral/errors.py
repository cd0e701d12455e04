"""Error taxonomy shared by the cache, consent and storage layers.

A missing cache value or consent record is not an error: lookups return
``None`` for that case.
"""


class ConvertViralError(Exception):
    """Base class for application errors."""


class ValidationError(ConvertViralError):
    """Malformed or incomplete client payload. Maps to HTTP 400."""


class StoreUnavailableError(ConvertViralError):
    """The persistent key/value store could not be reached."""


class SerializationError(ConvertViralError):
    """A stored value could not be decoded."""


class StorageError(ConvertViralError):
    """Object storage (S3) operation failed."""


class FileTooLargeError(ValidationError):
    """Upload exceeds the size limit for the caller's tier."""

    def __init__(self, message, limit_bytes):
        super().__init__(message)
        self.limit_bytes = limit_bytes
