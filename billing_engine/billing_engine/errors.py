"""Error taxonomy for billing event processing.

Each class maps to one handling policy at the webhook boundary:

* :class:`AuthenticationError` -- reject the request before any processing.
* :class:`EventValidationError` -- log, acknowledge, mutate nothing.
* :class:`TransientExternalError` -- propagate so the provider redelivers.
* :class:`PartialOrchestrationFailure` -- compensated locally, never escapes
  the checkout handler.
* :class:`StaleEventError` -- acknowledge without applying (only raised when
  version rejection is enabled).
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing engine errors."""


class AuthenticationError(BillingError):
    """The event signature is missing or does not match the shared secret."""


class EventValidationError(BillingError):
    """The event is authentic but cannot be applied.

    ``quarantined`` distinguishes payloads that failed their typed schema
    from well-formed events that lack the account-identifying metadata.
    """

    def __init__(self, message: str, *, quarantined: bool = False) -> None:
        super().__init__(message)
        self.quarantined = quarantined


class TransientExternalError(BillingError):
    """A call to the payment provider failed.

    Parameters
    ----------
    operation:
        Name of the remote operation that failed (e.g. ``retrieve_subscription``).
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class PartialOrchestrationFailure(BillingError):
    """The schedule was created remotely but its phases could not be set."""

    def __init__(self, account_id: str, schedule_id: str, cause: BaseException) -> None:
        super().__init__(f"schedule {schedule_id} for account {account_id} left unconfigured: {cause}")
        self.account_id = account_id
        self.schedule_id = schedule_id
        self.cause = cause


class StaleEventError(BillingError):
    """The event is older than the version already stored for the account."""

    def __init__(self, account_id: str, event_created: object, stored: object) -> None:
        super().__init__(f"event created at {event_created} is older than stored version {stored} for {account_id}")
        self.account_id = account_id
