# aegis/errors.py
"""
Error kinds shared by the audit pipeline.

Each error carries a numeric ``status_code`` so routes and stream events can
report it without guessing: collaborator statuses are kept as-is, transport
failures use 0.
"""


class AuditError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class InputError(AuditError):
    """Empty or malformed input (bytecode, address, calldata values). Never retried."""
    status_code = 400


class DuplicateCommitError(InputError):
    """A verdict for this trade id was already committed."""
    status_code = 409


class TransportError(AuditError):
    """The collaborator could not be reached at all."""
    status_code = 0


class UpstreamError(AuditError):
    """The collaborator answered with a non-success status."""
    status_code = 502


class AuditTimeoutError(AuditError, TimeoutError):
    """A poll/retry budget ran out, or the caller's deadline expired."""
    status_code = 408


class PipelineError(AuditError):
    """Internal inconsistency. Maps to the Error verdict and is never committed."""
    status_code = 500
