"""
Domain errors raised by the workflow and delivery services.
Routes translate workflow errors to HTTP status codes; delivery errors
never reach an HTTP caller.
"""
from typing import Optional


class WorkflowError(Exception):
    """Base class for request-workflow errors surfaced to the caller."""

    status_code = 400

    def __init__(self, message: str, *, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class InvalidStateTransition(WorkflowError):
    status_code = 422


class PermissionDenied(WorkflowError):
    status_code = 403


class InvalidRequestData(WorkflowError):
    status_code = 422


class InsufficientStock(WorkflowError):
    status_code = 422


class RequestNotFound(WorkflowError):
    status_code = 404


class NonRetryableJobError(Exception):
    """Raised from a job when another attempt cannot succeed."""


class DeliveryFailed(Exception):
    """Gateway error. The queue retries the job until its attempts run out."""


class InvalidPhoneNumber(DeliveryFailed, NonRetryableJobError):
    """Phone number the gateway can never deliver to."""


class GatewayNotConfigured(NonRetryableJobError):
    pass


class UnknownEventType(NonRetryableJobError):
    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


class MaxAttemptsExceeded(NonRetryableJobError):
    """A job was reserved again after using all of its attempts."""


class InvalidJobPayload(NonRetryableJobError):
    pass
