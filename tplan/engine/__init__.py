"""tplan engine package — descriptor-driven prerequisite chain resolution."""

__all__ = [
    "actions",
    "chain",
    "descriptor",
    "errors",
    "orchestrator",
    "preflight",
    "prompt",
    "report",
    "requirements",
    "runner",
    "segments",
    "selector",
    "store",
]
