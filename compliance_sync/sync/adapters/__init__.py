"""
Regulator API Adapters Module.

Contract and registry for the per-module regulator adapters.
"""

from compliance_sync.sync.adapters.base import (
    AdapterRegistry,
    ApiResponse,
    RegulatorModuleAdapter,
    SUPPORTED_OPERATIONS,
    classify_api_response,
)

__all__ = [
    "AdapterRegistry",
    "ApiResponse",
    "RegulatorModuleAdapter",
    "SUPPORTED_OPERATIONS",
    "classify_api_response",
]
