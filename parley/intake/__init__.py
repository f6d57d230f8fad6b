"""Intake -- everything that happens to a message before a run starts.

Public API: RateLimiter, FragmentReassembler, Debouncer.
"""

from parley.intake.debounce import Debouncer
from parley.intake.fragments import FragmentEntry, FragmentReassembler
from parley.intake.ratelimit import RateLimiter
from parley.intake.timers import KeyedTimers

__all__ = [
    "Debouncer",
    "FragmentEntry",
    "FragmentReassembler",
    "KeyedTimers",
    "RateLimiter",
]
