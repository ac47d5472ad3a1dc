from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class SearchError(RuntimeError):
    """Raised when the upstream search API call fails; aborts the current pass."""


class TimelineError(RuntimeError):
    """Raised when an author timeline cannot be fetched."""


class ImageDownloadError(RuntimeError):
    """Raised when an attached image cannot be downloaded."""


class LabelServiceError(RuntimeError):
    """
    Raised when the label-detection service reports an error.

    `code` is one of: invalid_image, image_too_large, access_denied, throttled,
    internal, quota_exceeded, invalid_parameter, unavailable, unknown.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code


class StorageError(RuntimeError):
    """Raised when reading or writing records in SQLite fails."""


class DuplicateRecordError(StorageError):
    """Raised when a create violates the unique post id constraint."""


class ExportError(RuntimeError):
    """Raised when writing an export file fails."""


class PassCancelled(RuntimeError):
    """Raised inside workers once the current pass has been cancelled."""
