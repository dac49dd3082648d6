"""Operational alerting for the pipeline."""
from .alerts import Alert, AlertCategory, AlertManager, AlertSeverity

__all__ = [
    "Alert",
    "AlertCategory",
    "AlertManager",
    "AlertSeverity"
]
