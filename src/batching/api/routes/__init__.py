"""Route group exports."""

from . import batches, drivers, health, workload

__all__ = ["batches", "drivers", "health", "workload"]
