"""tplan package — test prerequisite planning and execution."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "config",
    "error_report",
    "metrics",
    "planner_factory",
]
