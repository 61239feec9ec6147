"""Exceptions raised while ingesting uploaded holdings files.

All of these are input faults: they are raised before anything is written,
and the API layer maps them to 4xx responses with the message verbatim.
"""


class IngestionError(Exception):
    """Base exception for holdings file ingestion."""

    pass


class InvalidFileError(IngestionError):
    """File rejected by the size/extension/MIME gate or unreadable."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


class MissingColumnError(IngestionError):
    """A required column could not be mapped from the header row."""

    def __init__(self, column: str):
        self.column = column
        super().__init__(f"Required column not found: {column}")


class HeaderNotFoundError(IngestionError):
    """No row in the scanned range looks like a header row."""

    pass


class TooManyRowsError(IngestionError):
    """The sheet holds more data rows than the configured maximum."""

    def __init__(self, max_rows: int):
        self.max_rows = max_rows
        super().__init__(f"Too many rows. Maximum {max_rows} allowed")


class ProcessingTimeoutError(IngestionError):
    """The processing budget ran out before the work finished."""

    def __init__(self, message: str = "processing timeout"):
        super().__init__(message)
