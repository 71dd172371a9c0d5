"""
logvault - event log rotation and archival

This package keeps operating-system event logs from growing unbounded:
- Detects channels nearing capacity (75% of their maximum size)
- Exports, compresses and verifies them before clearing the live log
- Picks up logs the OS already rotated on its own
- Purges archives older than the retention window
"""

__version__ = "0.1.0"
__all__ = [
    "archive",
    "audit",
    "backends",
    "cli",
    "config",
    "engine",
    "exceptions",
    "inventory",
    "lock",
    "logging",
    "models",
    "policy",
    "reconcile",
    "retention",
]
