"""Operational alerts raised by pipeline stages."""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    """Pipeline areas an alert can come from."""
    INGESTION = "ingestion"
    MARKET_STATE = "market_state"
    DETECTION = "detection"
    VALUATION = "valuation"
    BUNDLING = "bundling"
    SUBMISSION = "submission"


SEVERITY_ORDER = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.ERROR: 1,
    AlertSeverity.WARNING: 2,
    AlertSeverity.INFO: 3
}

LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL
}


@dataclass
class Alert:
    """System alert with metadata."""
    alert_id: str
    category: AlertCategory
    severity: AlertSeverity
    title: str
    description: str
    timestamp: float = field(default_factory=time.time)
    source_component: str = ""
    metrics: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "timestamp": self.timestamp,
            "source_component": self.source_component,
            "metrics": self.metrics
        }


class AlertManager:
    """
    Tracks active alerts, logs them at their severity and optionally forwards
    them to a webhook. Repeats of an unresolved alert inside the cooldown are
    suppressed.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        cooldown_seconds: float = 300.0
    ):
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.active_alerts: Dict[str, Alert] = {}

        self.stats = {
            "alerts_generated": 0,
            "alerts_suppressed": 0,
            "alerts_resolved": 0,
            "webhook_failures": 0
        }

    def raise_alert(self, alert: Alert) -> bool:
        """
        Record and log an alert.

        Returns:
            False when suppressed by the cooldown
        """
        existing = self.active_alerts.get(alert.alert_id)
        if existing and not existing.resolved:
            if alert.timestamp - existing.timestamp < self.cooldown_seconds:
                self.stats["alerts_suppressed"] += 1
                return False

        self.active_alerts[alert.alert_id] = alert
        self.stats["alerts_generated"] += 1

        logger.log(
            LOG_LEVELS.get(alert.severity, logging.WARNING),
            f"Alert {alert.severity.value}: {alert.title} - {alert.description}"
        )
        return True

    async def notify(self, alert: Alert) -> None:
        """Record an alert and forward it to the webhook when configured."""
        if self.raise_alert(alert) and self.webhook_url:
            await self._send_webhook_alert(alert)

    def resolve(self, alert_id: str) -> bool:
        alert = self.active_alerts.get(alert_id)
        if alert is None or alert.resolved:
            return False
        alert.resolved = True
        alert.resolved_at = time.time()
        self.stats["alerts_resolved"] += 1
        logger.info(f"Alert resolved: {alert.title}")
        return True

    def get_active_alerts(self) -> List[Dict[str, Any]]:
        """Unresolved alerts, most severe and most recent first."""
        active = [alert for alert in self.active_alerts.values() if not alert.resolved]
        active.sort(key=lambda a: (SEVERITY_ORDER.get(a.severity, 99), -a.timestamp))
        return [alert.to_dict() for alert in active]

    def has_critical(self) -> bool:
        return any(
            a.severity == AlertSeverity.CRITICAL and not a.resolved
            for a in self.active_alerts.values()
        )

    async def _send_webhook_alert(self, alert: Alert) -> None:
        """Send alert notification via webhook."""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(self.webhook_url, json=alert.to_dict()) as response:
                    if response.status == 200:
                        logger.info(f"Alert webhook sent successfully for {alert.alert_id}")
                    else:
                        self.stats["webhook_failures"] += 1
                        logger.error(f"Alert webhook failed with status {response.status}")
        except aiohttp.ClientError as e:
            self.stats["webhook_failures"] += 1
            logger.error(f"Failed to send webhook alert: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "active_alerts": sum(1 for a in self.active_alerts.values() if not a.resolved)
        }
