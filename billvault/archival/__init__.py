"""
Archival module: hot → cold migration engine and the pass lease.
"""

from billvault.archival.lease import LeaseConfig, LeaseHandle, PassLease
from billvault.archival.engine import ArchivalEngine, RecordOutcome, cutoff_for_retention

__all__ = [
    "ArchivalEngine",
    "RecordOutcome",
    "cutoff_for_retention",
    "LeaseConfig",
    "LeaseHandle",
    "PassLease",
]
