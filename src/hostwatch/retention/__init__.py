"""
Retention windows and purges of the inventory.
"""
from .purge import PURGE_JOB_ID, RETENTION_KEY, PurgeEngine, cutoff_for

__all__ = ["PurgeEngine", "PURGE_JOB_ID", "RETENTION_KEY", "cutoff_for"]
