"""Unit tests for audit logger."""

from unittest.mock import MagicMock

import pytest

from taskbox.managers.event_bus import Event, EventBus, EventType
from taskbox.utils.audit_logger import REDACTED, AuditLogger


@pytest.fixture
def audit_logger():
    """Create audit logger with a mocked underlying logger."""
    logger = AuditLogger()
    logger._logger = MagicMock()
    return logger


def test_log_basic_event(audit_logger):
    """Test logging a basic event."""
    event = Event(
        type=EventType.CONTAINER_CREATED.value,
        data={"container_id": "c_123", "task_id": "t_1", "ip_address": "172.17.0.2"},
    )

    audit_logger.log_event(event)

    call_args = audit_logger._logger.info.call_args
    assert call_args[0][0] == "audit_event"
    extra = call_args[1]["extra"]
    assert extra["event_type"] == "container.created"
    assert extra["event_id"] == event.id
    assert extra["container_id"] == "c_123"
    assert extra["task_id"] == "t_1"
    assert extra["details"]["ip_address"] == "172.17.0.2"


def test_log_event_with_correlation_id(audit_logger):
    """Test logging event with correlation ID."""
    event = Event(type=EventType.TASK_STARTED.value, data={}, correlation_id="t_456")

    audit_logger.log_event(event)

    extra = audit_logger._logger.info.call_args[1]["extra"]
    assert extra["correlation_id"] == "t_456"
    assert "details" not in extra


def test_sanitize_sensitive_data(audit_logger):
    """Test that sensitive keys are redacted, including nested ones."""
    details = {
        "image": "ubuntu:22.04",
        "api_token": "secret123",
        "environment": {"DB_PASSWORD": "hunter2", "TERM": "xterm"},
        "items": [{"private_key": "abc"}, "plain"],
    }

    sanitized = audit_logger._sanitize_details(details)

    assert sanitized["image"] == "ubuntu:22.04"
    assert sanitized["api_token"] == REDACTED
    assert sanitized["environment"]["DB_PASSWORD"] == REDACTED
    assert sanitized["environment"]["TERM"] == "xterm"
    assert sanitized["items"] == [{"private_key": REDACTED}, "plain"]


@pytest.mark.asyncio
async def test_attach_audits_every_event_type(audit_logger):
    """Test that an attached audit logger records published events."""
    bus = EventBus()
    audit_logger.attach(bus)

    bus.publish(EventType.SYSTEM_READY, {"enabled": True})
    bus.publish(EventType.TASK_FAILED, {"task_id": "t_1", "error": "boom"})
    await bus.drain()

    assert audit_logger._logger.info.call_count == 2
    assert bus.subscriber_count() == len(EventType)

    audit_logger.detach()
    assert bus.subscriber_count() == 0
