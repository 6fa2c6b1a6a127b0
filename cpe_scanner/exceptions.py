# cpe_scanner/exceptions.py


class ScannerError(Exception):
    """Base class for every error raised by cpe_scanner."""


class ConfigurationError(ScannerError):
    """Settings are invalid or ambiguous; raised before any update/scan work begins."""


class DownloadFailedError(ScannerError):
    """A remote resource (feed file or its metadata) could not be retrieved."""


class InvalidDataError(ScannerError):
    """Remote metadata or feed content could not be interpreted."""


class UpdateError(ScannerError):
    """The update cycle failed while processing downloaded data."""


class DatabaseError(ScannerError):
    """The vulnerability store could not be read or written."""


class SearchUnavailableError(ScannerError):
    """The CPE index is missing, corrupt, or otherwise cannot be queried."""
