"""
Exceptions raised by the snapshot pipeline.
"""

import sys


class UnexpectedContentTypeError(Exception):
    """
    Exception raised when an unexpected content type is encountered in a HTTP response's
    'Content-Type' header.

    The catalog API is expected to answer with 'application/json'. Anything else is treated as a
    failed request by the catalog client.

    Attributes:
        message (str): An optional error message that can provide additional context about the
            content type issue.
    """

    def __init__(self, message="Expected content type of 'application/json'."):
        super().__init__(message)


class SnapshotDataMismatchError(Exception):
    """
    Exception raised when a detail fetch returns a different number of items than requested.

    This exception is used to indicate that audio features or artist details are missing such
    that the snapshot cannot be committed without breaking the relations between tracks, their
    features, and their artists. It aborts the whole run.

    Attributes:
        message (str): An optional error message that can provide additional context about the
            missing data.
    """

    def __init__(self, message="Snapshot detail data is incomplete."):
        super().__init__(message)


class UnsupportedPythonVersionError(Exception):
    """
    Exception raised when the Python version is not supported.

    Attributes:
        message (str): An optional error message that can provide additional context about the
            Python version issue.
    """

    def __init__(self, message=f"Python version {sys.version} is not supported."):
        super().__init__(message)
