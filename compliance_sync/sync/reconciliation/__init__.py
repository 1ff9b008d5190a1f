"""
Reconciliation Module.

Drift detection between local and regulator record sets.
"""

from compliance_sync.sync.reconciliation.engine import (
    DEFAULT_ENTITY_TYPES,
    ReconciliationEngine,
    compare_record_sets,
)

__all__ = [
    "DEFAULT_ENTITY_TYPES",
    "ReconciliationEngine",
    "compare_record_sets",
]
