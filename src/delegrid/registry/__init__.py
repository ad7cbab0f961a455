"""Worker registry: lifecycle, slot pool, event log and project metadata."""

from delegrid.registry.models import (
    DashboardStats,
    EventType,
    EventView,
    SlotView,
    WorkerRegistration,
    WorkerStatus,
    WorkerView,
    can_transition,
)
from delegrid.registry.reports import ManagerReport, WorkerReport, manager_report
from delegrid.registry.repository import WorkerRegistry

__all__ = [
    "DashboardStats",
    "EventType",
    "EventView",
    "ManagerReport",
    "SlotView",
    "WorkerRegistration",
    "WorkerReport",
    "WorkerRegistry",
    "WorkerStatus",
    "WorkerView",
    "can_transition",
    "manager_report",
]
