"""Error taxonomy for entitlement synchronization and metering.

Every exception raised across the engine boundary derives from
:class:`EntitlementError` so that callers can tell engine failures apart
from programming errors.  The classes fall into three groups:

* **Unrecoverable event errors** -- :class:`MalformedEventError`,
  :class:`UnrecognizedEventTypeError`, :class:`TenantNotFoundError`.  The
  webhook is acknowledged and the event dropped; redelivery would never
  succeed.
* **Boundary / transient errors** -- :class:`SignatureInvalidError` rejects a
  delivery before parsing; :class:`StorageTransientError` fails a delivery so
  that the provider redelivers it later.
* **User-visible results** -- :class:`QuotaExceededError` and
  :class:`TenantAlreadyExistsError` surface to the calling product action.
"""

from __future__ import annotations


class EntitlementError(Exception):
    """Base class for all entitlement engine errors."""


class MalformedEventError(EntitlementError):
    """Raised when a billing event cannot be mapped to a canonical event.

    ``event_id`` and ``event_type`` are populated when the envelope carried
    them, so the delivery can still be recorded in the dedup ledger.
    """

    def __init__(
        self,
        message: str,
        *,
        event_id: str | None = None,
        event_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.event_id = event_id
        self.event_type = event_type


class TenantNotFoundError(MalformedEventError):
    """Raised when an event or request references a tenant with no record."""

    def __init__(self, tenant_id: str, *, event_id: str | None = None, event_type: str | None = None) -> None:
        super().__init__(f"No entitlement record for tenant '{tenant_id}'", event_id=event_id, event_type=event_type)
        self.tenant_id = tenant_id


class UnrecognizedEventTypeError(EntitlementError):
    """Raised for provider event types outside the accepted set."""

    def __init__(self, event_type: str, *, event_id: str | None = None) -> None:
        super().__init__(f"Unrecognized billing event type: {event_type!r}")
        self.event_type = event_type
        self.event_id = event_id


class SignatureInvalidError(EntitlementError):
    """Raised when a webhook delivery is unsigned or its signature does not verify."""


class StorageTransientError(EntitlementError):
    """Raised when a storage operation failed in a way that may succeed on retry."""


class QuotaExceededError(EntitlementError):
    """Raised when a consume request would push usage past the plan limit.

    No mutation has been performed when this is raised.
    """

    def __init__(self, tenant_id: str, *, requested: int, usage_count: int, usage_limit: int) -> None:
        super().__init__(
            f"Usage quota exceeded for tenant '{tenant_id}' "
            f"({usage_count}/{usage_limit} used, {requested} requested). "
            "Upgrade your plan for higher limits."
        )
        self.tenant_id = tenant_id
        self.requested = requested
        self.usage_count = usage_count
        self.usage_limit = usage_limit


class TenantAlreadyExistsError(EntitlementError):
    """Raised when provisioning a tenant that already has a record."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant '{tenant_id}' already exists")
        self.tenant_id = tenant_id
