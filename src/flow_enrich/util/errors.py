from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    INDEX_ERROR = 3
    LOOKUP_ERROR = 4
    RUNTIME_ERROR = 5


class EnrichError(Exception):
    """Base error for the enrichment pipeline."""


class ConfigError(EnrichError):
    """Raised for configuration, rule or argument issues."""


class IndexLoadError(EnrichError):
    """Raised when an address index snapshot cannot be loaded."""


class LookupBackendError(EnrichError):
    """Raised when the address resolver fails for a reason other than not-found."""

    def __init__(self, message: str, *, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class ExportError(EnrichError):
    """Raised when reading or writing flow records fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, IndexLoadError):
        return int(ExitCode.INDEX_ERROR)
    if isinstance(exc, LookupBackendError):
        return int(ExitCode.LOOKUP_ERROR)
    if isinstance(exc, (ExportError, EnrichError)):
        return int(ExitCode.RUNTIME_ERROR)
    return 1
