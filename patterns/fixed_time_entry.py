from __future__ import annotations

import re
from typing import Any, Dict, Optional

import pandas as pd

from errors import ConfigError
from time_utils import SESSION_CLOSE_MINUTE, SESSION_OPEN_MINUTE

from .base import DIRECTIONS, Signal, check_option_names, first_session_day, make_signal

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class FixedTimeEntryPattern:
    """Enter every trading day at the close of the bar stamped `entry_time`."""

    name = "fixed-time-entry"
    description = "Enter at a fixed clock time each session"
    direction = "long"
    option_names = frozenset({"entry_time", "direction"})
    default_options = {"entry_time": "12:00", "direction": "long"}

    def validate_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        opts = dict(self.default_options)
        opts.update(options or {})
        check_option_names(self.name, opts, self.option_names)

        entry_time = str(opts["entry_time"]).strip()
        match = _HHMM.match(entry_time)
        if not match:
            raise ConfigError(f"entry_time must be HH:MM, got {opts['entry_time']!r}")
        minutes = int(match.group(1)) * 60 + int(match.group(2))
        if not SESSION_OPEN_MINUTE <= minutes <= SESSION_CLOSE_MINUTE:
            raise ConfigError(f"entry_time {entry_time} is outside the regular session")

        direction = str(opts["direction"]).lower()
        if direction not in DIRECTIONS:
            raise ConfigError(f"direction must be one of {DIRECTIONS}, got {opts['direction']!r}")
        return {"entry_time": entry_time, "direction": direction}

    def describe(self, options: Optional[Dict[str, Any]] = None) -> str:
        opts = self.validate_options(options)
        return f"Fixed Time Entry: {opts['direction']} at {opts['entry_time']}"

    def to_query_fragment(self, options: Optional[Dict[str, Any]] = None) -> str:
        opts = self.validate_options(options)
        return f"""
      SELECT
        m.trade_date,
        m.year,
        m.market_open,
        e.timestamp AS entry_time,
        e.close AS entry_price,
        NULL::DOUBLE AS rise_pct,
        '{opts['direction']}' AS direction
      FROM market_open_prices m
      JOIN session_bars e
        ON e.trade_date = m.trade_date
       AND e.bar_time = '{opts['entry_time']}'
        """

    def detect(self, bars: pd.DataFrame, options: Optional[Dict[str, Any]] = None) -> Optional[Signal]:
        opts = self.validate_options(options)
        day = first_session_day(bars)
        if day.empty:
            return None
        labels = pd.to_datetime(day["Datetime"]).dt.strftime("%H:%M")
        hits = day[labels == opts["entry_time"]]
        if hits.empty:
            return None
        entry = hits.iloc[0]
        return make_signal(entry, entry["Close"], opts["direction"])
