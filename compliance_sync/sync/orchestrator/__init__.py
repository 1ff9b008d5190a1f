"""
Sync Orchestrator Module.

Lifecycle of compliance sync runs per license.
"""

from compliance_sync.sync.orchestrator.sync_orchestrator import ComplianceSyncOrchestrator

__all__ = [
    "ComplianceSyncOrchestrator",
]
