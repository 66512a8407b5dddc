"""
Pipeline Error Taxonomy

Every failure raised while processing a queue item maps to one of these
classes. The Queue Manager reads `retryable` to decide between scheduling a
retry and failing the item permanently.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind: str = "fatal"
    retryable: bool = False

    def __init__(self, message: str, *, event_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.event_type = event_type


class ValidationError(PipelineError):
    """Missing or malformed fields. Never retried."""

    kind = "validation"
    retryable = False


class TransientError(PipelineError):
    """A dependency was unavailable. Retried with backoff."""

    kind = "transient"
    retryable = True


class UnsupportedEventError(PipelineError):
    """Unknown event type inside a known queue. Never retried."""

    kind = "unsupported"
    retryable = False


class FatalError(PipelineError):
    """Retries exhausted. Terminal."""

    kind = "fatal"
    retryable = False


class ProcessorNotFound(PipelineError):
    """No processor is registered for a queue type."""

    kind = "configuration"
    retryable = False


class InvalidStatusTransition(PipelineError):
    """A queue item status change that the lifecycle does not allow."""

    kind = "invalid_transition"
    retryable = False

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal queue status transition: {current} -> {target}")
        self.current = current
        self.target = target


class ReauthorizationRequired(ValidationError):
    """The token capability cannot produce a credential for a tenant."""

    def __init__(self, tenant_id: str, reason: str = "no valid credential"):
        super().__init__(f"Reauthorization required for tenant {tenant_id}: {reason}")
        self.tenant_id = tenant_id


def classify_exception(error: BaseException) -> tuple[str, bool]:
    """
    Map any exception to (kind, retryable).

    Unexpected exceptions are treated as transient so that a flaky dependency
    does not permanently fail an item on first contact.
    """
    if isinstance(error, PipelineError):
        return error.kind, error.retryable
    return TransientError.kind, True
