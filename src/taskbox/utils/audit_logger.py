"""Structured audit logging of lifecycle events."""

import logging
from typing import Any, List

from taskbox.managers.event_bus import Event, EventBus, EventType, Subscription
from taskbox.utils.logging import get_logger

SENSITIVE_KEYS = {
    "password",
    "token",
    "secret",
    "key",
    "auth",
    "credentials",
    "private",
}

REDACTED = "***REDACTED***"


class AuditLogger:
    """Writes one structured audit record per lifecycle event."""

    def __init__(self):
        """Initialize the audit logger."""
        self._logger = get_logger("audit")
        # Audit records are always emitted
        self._logger.setLevel(logging.INFO)
        self._subscriptions: List[Subscription] = []

    def attach(self, bus: EventBus) -> None:
        """
        Subscribe to every event type on the bus.

        Args:
            bus: Event bus to audit
        """
        for event_type in EventType:
            self._subscriptions.append(bus.subscribe(event_type, self.log_event))

    def detach(self) -> None:
        """Remove all bus subscriptions."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def log_event(self, event: Event) -> None:
        """
        Log an audit record for an event.

        Args:
            event: Published event
        """
        record = {
            "timestamp": event.timestamp.isoformat(),
            "event_type": event.type,
            "event_id": event.id,
            "source": event.source,
        }

        for field_name in ("container_id", "task_id", "agent_id"):
            if event.data.get(field_name):
                record[field_name] = event.data[field_name]
        if event.correlation_id:
            record["correlation_id"] = event.correlation_id

        details = self._sanitize_details(event.data)
        if details:
            record["details"] = details

        self._logger.info("audit_event", extra=record)

    def _sanitize_details(self, details: dict[str, Any]) -> dict[str, Any]:
        """
        Sanitize sensitive information from event details.

        Args:
            details: Raw event details

        Returns:
            Sanitized details with sensitive fields redacted
        """
        sanitized = {}
        for key, value in details.items():
            if any(sensitive_word in key.lower() for sensitive_word in SENSITIVE_KEYS):
                sanitized[key] = REDACTED
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_details(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    self._sanitize_details(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                sanitized[key] = value

        return sanitized
