"""
Recurring automatic scans.
"""
from .coordinator import (
    FULL_SCAN_JOB_ID,
    REFRESH_JOB_ID,
    ScheduleCoordinator,
)

__all__ = ["ScheduleCoordinator", "FULL_SCAN_JOB_ID", "REFRESH_JOB_ID"]
