"""
Compliance Sync Service

Synchronization engine between local cultivation records and the state
regulator's seed-to-sale tracking API.
"""

__version__ = "1.0.0"
