"""Entry pattern variants and their registry.

Each variant exposes describe(), to_query_fragment(options) and
detect(bars, options). Use `patterns.get_entry_pattern()` to resolve a name
and its options into a `ResolvedPattern`.
"""

from __future__ import annotations

from .base import EnrichedSignal, EntryPattern, Signal  # noqa: F401
from .registry import ResolvedPattern, available_patterns, get_entry_pattern  # noqa: F401

__all__ = [
    "EnrichedSignal",
    "EntryPattern",
    "ResolvedPattern",
    "Signal",
    "available_patterns",
    "get_entry_pattern",
]
