"""Background maintenance scheduling."""

from mnemos.scheduler.maintenance import JOB_NAMES, MaintenanceScheduler

__all__ = ["JOB_NAMES", "MaintenanceScheduler"]
