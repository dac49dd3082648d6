"""Opportunity lifecycle registry."""
from .opportunity_registry import (
    OpportunityRegistry,
    RegistryConfig,
    RegistryError,
    Duplicate,
    UnknownOpportunity,
    InvalidTransition,
    TransitionConflict,
    OpportunityExpired,
    ALLOWED_TRANSITIONS
)

__all__ = [
    "OpportunityRegistry",
    "RegistryConfig",
    "RegistryError",
    "Duplicate",
    "UnknownOpportunity",
    "InvalidTransition",
    "TransitionConflict",
    "OpportunityExpired",
    "ALLOWED_TRANSITIONS"
]
