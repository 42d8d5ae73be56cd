from __future__ import annotations


class CaseflowError(Exception):
    """Base error for caseflow.

    ``code`` and ``http_status`` are what the API reports when the error reaches a caller.
    """

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False


class ProviderConfigError(CaseflowError):
    """Missing or invalid collaborator configuration."""

    code = "PROVIDER_MISCONFIGURED"


class InputAmbiguousError(CaseflowError):
    """Classification confidence is below the auto-action threshold."""

    code = "INPUT_AMBIGUOUS"
    http_status = 422

    def __init__(self, confidence: int, threshold: int) -> None:
        super().__init__(f"confidence {confidence} is below threshold {threshold}")
        self.confidence = confidence
        self.threshold = threshold


class CollaboratorUnavailableError(CaseflowError):
    """A collaborator is down or timed out; the caller may redeliver."""

    code = "COLLABORATOR_UNAVAILABLE"
    http_status = 503
    retryable = True


class IntegrationUnavailableError(CollaboratorUnavailableError):
    """Circuit breaker is open for an integration."""


class OrderLookupUnavailableError(CollaboratorUnavailableError):
    """Order platform lookup failed or timed out."""


class ClassifierUnavailableError(CollaboratorUnavailableError):
    """Classification call failed or timed out."""


class NotificationDeliveryError(CollaboratorUnavailableError):
    """Mail transport rejected or failed to deliver a message."""


class ThreadBusyError(CollaboratorUnavailableError):
    """Another worker holds the thread lease past the wait budget."""


class QuotaExhaustedError(CaseflowError):
    """Usage quota for a tenant/service is exhausted for the current window."""

    code = "QUOTA_EXCEEDED"
    http_status = 402

    def __init__(self, tenant_id: str, service: str, period: str | None) -> None:
        super().__init__(f"{service} quota exhausted for tenant {tenant_id} ({period or 'unknown'} window)")
        self.tenant_id = tenant_id
        self.service = service
        self.period = period


class ActionExecutionError(CaseflowError):
    """An approved action failed at the collaborator."""

    code = "ACTION_FAILED"
    http_status = 502

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class PolicyViolationError(CaseflowError):
    """Outgoing text violates business rules and no safe fallback is available."""

    code = "POLICY_VIOLATION"


class InvalidTransitionError(CaseflowError):
    """Conversation state transition is not permitted."""

    code = "INVALID_TRANSITION"
    http_status = 409
