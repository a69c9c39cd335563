from __future__ import annotations

from .models import ErrorKind, ExecutionError


class ImagerError(Exception):
    """Base error. Subclasses that can end a run carry an ``ErrorKind``."""

    kind: ErrorKind | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_execution_error(self) -> ExecutionError:
        kind = self.kind if self.kind is not None else ErrorKind.TRANSPORT_ERROR
        return ExecutionError(kind=kind, message=self.message)


class GraphLoadError(ImagerError):
    kind = ErrorKind.GRAPH_LOAD_ERROR


class UploadError(ImagerError):
    kind = ErrorKind.UPLOAD_ERROR


class SubmitError(ImagerError):
    kind = ErrorKind.SUBMIT_ERROR


class TransportError(ImagerError):
    kind = ErrorKind.TRANSPORT_ERROR


class ExecutionTimeoutError(ImagerError):
    kind = ErrorKind.EXECUTION_TIMEOUT


class NoOutputProducedError(ImagerError):
    kind = ErrorKind.NO_OUTPUT_PRODUCED


class InvalidOverrideError(ImagerError):
    kind = ErrorKind.INVALID_OVERRIDE


class RunInProgressError(ImagerError):
    """Raised when ``run()`` is called while another run is active."""


class KeywordStoreError(ImagerError):
    """Raised when a keyword or macro document cannot be read or written."""
