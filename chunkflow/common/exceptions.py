# chunkflow/common/exceptions.py


class ChunkFlowException(Exception):
    """Base exception for the chunkflow library."""

    pass


class InvalidInput(ChunkFlowException):
    """Raised when a job or task is registered with unusable parameters."""

    pass


class NotFound(ChunkFlowException):
    """Raised when a job, chunk or task id does not exist in storage."""

    pass


class ProcessorLoadError(ChunkFlowException):
    """Raised when no processor can be resolved for a job or task kind."""

    pass


class ProcessingError(ChunkFlowException):
    """Base class for errors a processor raises to classify its own failure.

    The ``kind`` attribute is what the retry controller reads; exceptions that
    are not ``ProcessingError`` subclasses are classified from their HTTP
    status, when they carry one, or from their message.
    """

    kind = "unknown"


class TransientError(ProcessingError):
    """Network, timeout or rate-limit failure. Always retried."""

    kind = "transient"


class ValidationError(ProcessingError):
    """Malformed or unexpected input shape. Retried once, then permanent."""

    kind = "validation"


class PermanentError(ProcessingError):
    """Failure that no retry can fix (e.g. rejected credentials)."""

    kind = "permanent"
