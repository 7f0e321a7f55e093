"""Butler CI controller convergence toolkit."""

from .coordinator import HostSetCoordinator
from .engine import ConvergenceEngine
from .inventory import InventoryLoader
from .planner import TaskPlanner

__all__ = ["HostSetCoordinator", "ConvergenceEngine", "InventoryLoader", "TaskPlanner"]
