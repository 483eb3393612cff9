from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Protocol

import pandas as pd

from errors import ConfigError
from time_utils import filter_regular_session, to_market_time

DIRECTIONS = ("long", "short")


@dataclass(frozen=True)
class Signal:
    """A point event on the price series (entry or exit)."""

    timestamp: pd.Timestamp
    price: float
    type: str = "entry"
    direction: Optional[str] = None


@dataclass(frozen=True)
class EnrichedSignal(Signal):
    ticker: str = ""
    trade_date: str = ""


class EntryPattern(Protocol):
    """Capability set shared by every entry pattern variant."""

    name: str
    description: str
    direction: str
    option_names: FrozenSet[str]

    def describe(self, options: Optional[Dict[str, Any]] = None) -> str: ...

    def validate_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]: ...

    def to_query_fragment(self, options: Optional[Dict[str, Any]] = None) -> str: ...

    def detect(self, bars: pd.DataFrame, options: Optional[Dict[str, Any]] = None) -> Optional[Signal]: ...


def check_option_names(pattern_name: str, options: Dict[str, Any], allowed: FrozenSet[str]):
    unknown = sorted(set(options) - set(allowed))
    if unknown:
        raise ConfigError(
            f"Unknown option(s) {', '.join(unknown)} for pattern '{pattern_name}'. "
            f"Allowed: {', '.join(sorted(allowed))}"
        )


def positive_number(pattern_name: str, key: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Option '{key}' of pattern '{pattern_name}' must be a number, got {value!r}")
    if number <= 0:
        raise ConfigError(f"Option '{key}' of pattern '{pattern_name}' must be > 0, got {value!r}")
    return number


def first_session_day(bars: pd.DataFrame) -> pd.DataFrame:
    """Regular-session bars of the earliest day present in `bars`."""
    session = filter_regular_session(bars)
    if session.empty:
        return session
    days = pd.to_datetime(session["Datetime"]).dt.date
    return session[days == days.iloc[0]].reset_index(drop=True)


def make_signal(row: pd.Series, price: float, direction: str) -> Signal:
    return Signal(
        timestamp=to_market_time(row["Datetime"]),
        price=float(price),
        type="entry",
        direction=direction,
    )
