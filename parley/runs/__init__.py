"""Runs -- per-conversation run state and cancellation.

Public API: RunCoordinator, CancellationRegistry, RunHandle, Disposition.
"""

from parley.runs.cancellation import CancellationRegistry, RunHandle
from parley.runs.coordinator import Disposition, RunCoordinator, RunStateError

__all__ = [
    "CancellationRegistry",
    "Disposition",
    "RunCoordinator",
    "RunHandle",
    "RunStateError",
]
