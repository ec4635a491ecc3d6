"""
Entity and dashboard coordinators.
"""
from .dashboard import DashboardCoordinator, DashboardSnapshot
from .entity import EntityCoordinator, EntitySnapshot
from .hub import CoordinatorHub

__all__ = [
    "DashboardCoordinator",
    "DashboardSnapshot",
    "EntityCoordinator",
    "EntitySnapshot",
    "CoordinatorHub",
]
