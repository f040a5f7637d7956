"""Relay orchestration."""

from .orchestrator import GENERATION_ERROR_MESSAGE, RelayOrchestrator, RelaySession, RelayState

__all__ = [
    "GENERATION_ERROR_MESSAGE",
    "RelayOrchestrator",
    "RelaySession",
    "RelayState",
]
