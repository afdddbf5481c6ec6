"""Error taxonomy shared by tools, the dispatcher, retrieval and the agent loop.

Tool handlers raise ``ToolError`` subclasses; the dispatcher turns them into
failed tool results so the model sees every failure. Storage-boundary errors
(``DimensionMismatch``, ``IsolationError``) are hard errors and are never
downgraded into results by the store itself.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable failure category carried on failed tool results."""

    INVALID_ARGUMENTS = "invalid_arguments"
    UNKNOWN_TOOL = "unknown_tool"
    UNKNOWN_COLLECTION = "unknown_collection"
    COLLECTION_NOT_READY = "collection_not_ready"
    EMBEDDING_FAILED = "embedding_failed"
    TIMED_OUT = "timed_out"
    PROCESS_FAILED = "process_failed"
    CANCELLED = "cancelled"
    DENIED = "denied"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    MODEL_CLIENT_ERROR = "model_client_error"
    EXECUTION_FAILED = "execution_failed"


class SidecarError(Exception):
    """Base class for all sidecar errors."""


class ConfigError(SidecarError):
    """Malformed or invalid configuration. Fatal at startup."""


class DimensionMismatch(SidecarError, ValueError):
    """A vector does not match the dimensionality of its collection."""


class IsolationError(SidecarError):
    """An entry from one collection surfaced in another collection's results."""


class ToolError(SidecarError):
    """Failure raised by a tool handler and reported back to the model.

    Attributes:
        kind: Failure category.
        output: Optional partial output to include in the failed result.
    """

    kind: ErrorKind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        self.output = output

    @property
    def message(self) -> str:
        return str(self)


class InvalidArguments(ToolError):
    kind = ErrorKind.INVALID_ARGUMENTS


class UnknownTool(ToolError):
    kind = ErrorKind.UNKNOWN_TOOL


class UnknownCollection(ToolError):
    kind = ErrorKind.UNKNOWN_COLLECTION


class CollectionNotReady(ToolError):
    kind = ErrorKind.COLLECTION_NOT_READY


class EmbeddingFailed(ToolError):
    kind = ErrorKind.EMBEDDING_FAILED


class TimedOut(ToolError):
    kind = ErrorKind.TIMED_OUT


class Cancelled(ToolError):
    kind = ErrorKind.CANCELLED


class Denied(ToolError):
    """The user declined a tool call that needs confirmation."""

    kind = ErrorKind.DENIED


class ResourceExhausted(ToolError):
    kind = ErrorKind.RESOURCE_EXHAUSTED


class ProcessFailed(ToolError):
    """A child process exited with a non-zero status."""

    kind = ErrorKind.PROCESS_FAILED

    def __init__(self, message: str, exit_code: Optional[int] = None, output: Optional[str] = None):
        super().__init__(message, output=output)
        self.exit_code = exit_code


class ModelClientError(SidecarError):
    """The model endpoint could not produce a response."""

    kind = ErrorKind.MODEL_CLIENT_ERROR
