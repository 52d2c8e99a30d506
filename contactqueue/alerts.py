"""Operator alerts for queue health."""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from .collaborators import AlertSink
from .models import utcnow

logger = logging.getLogger(__name__)

SINK_TIMEOUT = 5.0  # seconds


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class AlertType(str, Enum):
    QUEUE_BACKED_UP = "queue_backed_up"
    QUEUE_STALLED = "queue_stalled"
    QUEUE_PROCESSING_ERROR = "queue_processing_error"


class AlertRule(BaseModel):
    severity: Severity
    cooldown: float  # seconds between two alerts of the same type
    message: str


ALERT_RULES: Dict[AlertType, AlertRule] = {
    AlertType.QUEUE_BACKED_UP: AlertRule(
        severity=Severity.MEDIUM,
        cooldown=30 * 60,
        message="Queue backed up with {pending_count} pending items (threshold {threshold})",
    ),
    AlertType.QUEUE_STALLED: AlertRule(
        severity=Severity.HIGH,
        cooldown=15 * 60,
        message="{processing_count} items processing, oldest for {oldest_hours}h",
    ),
    AlertType.QUEUE_PROCESSING_ERROR: AlertRule(
        severity=Severity.HIGH,
        cooldown=15 * 60,
        message="Queue processing error: {error_message}",
    ),
}


class Alert(BaseModel):
    type: AlertType
    severity: Severity
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


class Alerter:
    """Formats, rate-limits and delivers alerts.

    Delivery is best effort: a failing or slow sink is logged and never
    propagates to the caller.
    """

    def __init__(self, sink: Optional[AlertSink] = None, clock: Callable[[], float] = time.monotonic):
        self.sink = sink
        self.clock = clock
        self._last_sent: Dict[AlertType, float] = {}

    async def trigger(self, alert_type: AlertType, **data: Any) -> Optional[Alert]:
        """Send an alert unless one of the same type went out within its cooldown."""
        rule = ALERT_RULES[alert_type]
        now = self.clock()
        last = self._last_sent.get(alert_type)
        if last is not None and now - last < rule.cooldown:
            logger.debug(f"Alert {alert_type.value} suppressed (cooldown)")
            return None
        self._last_sent[alert_type] = now

        alert = Alert(
            type=alert_type,
            severity=rule.severity,
            message=rule.message.format_map(_SafeDict(data)),
            data=data,
        )
        logger.warning(f"ALERT [{alert.severity.value}] {alert.type.value}: {alert.message}")

        if self.sink is not None:
            try:
                await asyncio.wait_for(self.sink.send(alert), timeout=SINK_TIMEOUT)
            except Exception as e:
                logger.error(f"Failed to deliver alert {alert_type.value}: {e}")
        return alert
