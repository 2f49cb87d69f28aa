from __future__ import annotations


class RelayError(Exception):
    """Base error for NCRelay."""


class NotificationNotFound(RelayError):
    """Queue row is missing or not in the state the operation requires."""

    def __init__(self, notification_id: str, message: str = "Notification not found") -> None:
        super().__init__(message)
        self.notification_id = notification_id
        self.message = message


class StoreError(RelayError):
    """Queue persistence failure (constraint violation, lost connection)."""


class TransportFailure(RelayError):
    """Webhook POST failed before a response arrived (DNS, refused, timeout)."""


class DeliveryRejected(RelayError):
    """Webhook endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str | None) -> None:
        super().__init__(f"HTTP {status_code}: {body or ''}")
        self.status_code = status_code
        self.body = body


class IntegrationUnavailable(RelayError):
    """Integration is unknown or disabled, so nothing can be queued for it."""


class BulkLimitExceeded(RelayError):
    """Bulk operation received more ids than allowed."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum {limit} notifications can be processed at once")
        self.limit = limit
