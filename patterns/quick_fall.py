"""Quick Fall: mirror of Quick Rise, price drops off the 09:30 open."""

from __future__ import annotations

from typing import Any, Dict, Optional

import pandas as pd

from .base import Signal, check_option_names, first_session_day, make_signal, positive_number


class QuickFallPattern:
    name = "quick-fall"
    description = "Enter after price falls fall_pct% from the 09:30 open within within_minutes"
    direction = "short"
    option_names = frozenset({"fall_pct", "within_minutes"})
    default_options = {"fall_pct": 0.3, "within_minutes": 5}

    def validate_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        opts = dict(self.default_options)
        opts.update(options or {})
        check_option_names(self.name, opts, self.option_names)
        return {
            "fall_pct": positive_number(self.name, "fall_pct", opts["fall_pct"]),
            "within_minutes": int(positive_number(self.name, "within_minutes", opts["within_minutes"])),
        }

    def describe(self, options: Optional[Dict[str, Any]] = None) -> str:
        opts = self.validate_options(options)
        return (
            f"Quick Fall: {opts['fall_pct']}% fall from the open within "
            f"{opts['within_minutes']} minutes"
        )

    def to_query_fragment(self, options: Optional[Dict[str, Any]] = None) -> str:
        opts = self.validate_options(options)
        threshold = opts["fall_pct"] / 100
        minutes = opts["within_minutes"]
        # rise_pct carries the size of the fall as a positive fraction
        return f"""
      SELECT
        m.trade_date,
        m.year,
        m.market_open,
        e.timestamp AS entry_time,
        e.open AS entry_price,
        (m.market_open - w.window_low) / m.market_open AS rise_pct,
        'short' AS direction
      FROM market_open_prices m
      JOIN (
        SELECT s.trade_date, MIN(s.low) AS window_low
        FROM session_bars s
        JOIN market_open_prices mo ON s.trade_date = mo.trade_date
        WHERE s.timestamp < mo.market_open_time + INTERVAL {minutes} MINUTE
        GROUP BY s.trade_date
      ) w ON w.trade_date = m.trade_date
      JOIN session_bars e
        ON e.trade_date = m.trade_date
       AND e.timestamp = m.market_open_time + INTERVAL {minutes} MINUTE
      WHERE (m.market_open - w.window_low) / m.market_open >= {threshold}
        """

    def detect(self, bars: pd.DataFrame, options: Optional[Dict[str, Any]] = None) -> Optional[Signal]:
        opts = self.validate_options(options)
        day = first_session_day(bars)
        if day.empty:
            return None
        open_time = day["Datetime"].iloc[0]
        market_open = float(day["Open"].iloc[0])
        entry_time = open_time + pd.Timedelta(minutes=opts["within_minutes"])

        window = day[day["Datetime"] < entry_time]
        entry_rows = day[day["Datetime"] == entry_time]
        if window.empty or entry_rows.empty or market_open <= 0:
            return None
        fall = (market_open - float(window["Low"].min())) / market_open
        if fall < opts["fall_pct"] / 100:
            return None
        entry = entry_rows.iloc[0]
        return make_signal(entry, entry["Open"], self.direction)
