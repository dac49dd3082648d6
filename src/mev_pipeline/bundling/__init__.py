"""Bundle models and construction."""
from .bundle_models import (
    Bundle,
    BundleStatus,
    TransactionDescriptor,
    TransactionRole,
    validate_dependency_order,
    compute_bundle_id
)
from .bundle_constructor import (
    BundleConstructor,
    BundleConfig,
    BundleConstructionError,
    ConstructionFailed
)

__all__ = [
    "Bundle",
    "BundleStatus",
    "TransactionDescriptor",
    "TransactionRole",
    "validate_dependency_order",
    "compute_bundle_id",
    "BundleConstructor",
    "BundleConfig",
    "BundleConstructionError",
    "ConstructionFailed"
]
