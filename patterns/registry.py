"""Entry pattern lookup.

Lookups never raise: they return a Result carrying either the resolved pattern
(with validated options) or the error kind, and the caller decides whether the
error is fatal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from errors import ConfigError, PatternNotFoundError, Result

from .base import EntryPattern, Signal
from .fixed_time_entry import FixedTimeEntryPattern
from .quick_fall import QuickFallPattern
from .quick_rise import QuickRisePattern

_ENTRY_PATTERNS: Dict[str, EntryPattern] = {
    p.name: p for p in (QuickRisePattern(), QuickFallPattern(), FixedTimeEntryPattern())
}


@dataclass(frozen=True)
class ResolvedPattern:
    """A pattern bound to its validated options."""

    pattern: EntryPattern
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.pattern.name

    @property
    def direction(self) -> str:
        return self.options.get("direction", self.pattern.direction)

    def describe(self) -> str:
        return self.pattern.describe(self.options)

    def to_query_fragment(self) -> str:
        return self.pattern.to_query_fragment(self.options)

    def detect(self, bars: pd.DataFrame) -> Optional[Signal]:
        return self.pattern.detect(bars, self.options)


def available_patterns() -> List[str]:
    return sorted(_ENTRY_PATTERNS)


def get_entry_pattern(name: str, options: Optional[Dict[str, Any]] = None) -> Result[ResolvedPattern]:
    key = (name or "").strip().lower()
    pattern = _ENTRY_PATTERNS.get(key)
    if pattern is None:
        return Result.failure(
            PatternNotFoundError(
                f"Entry pattern '{name}' not found. Available patterns: {', '.join(available_patterns())}",
                pattern=name,
            )
        )
    try:
        validated = pattern.validate_options(options)
    except ConfigError as exc:
        return Result.failure(exc)
    return Result.success(ResolvedPattern(pattern=pattern, options=validated))
