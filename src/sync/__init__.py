"""
Sync engine: decides when to sync and what one sync attempt does.

Modules:
- orchestrator: single-flight state machine (no-op / upload / download)
- notifier: debounced local change signal
- scheduler: periodic, change-driven and manual triggers
- handler: wiring from configuration and the `tracker-sync` CLI
"""

__all__ = [
    "orchestrator",
    "notifier",
    "scheduler",
    "handler",
]
