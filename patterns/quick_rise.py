"""Quick Rise: price rallies off the 09:30 open within the first minutes of the session."""

from __future__ import annotations

from typing import Any, Dict, Optional

import pandas as pd

from .base import Signal, check_option_names, first_session_day, make_signal, positive_number


class QuickRisePattern:
    name = "quick-rise"
    description = "Enter after price rises rise_pct% from the 09:30 open within within_minutes"
    direction = "long"
    option_names = frozenset({"rise_pct", "within_minutes"})
    default_options = {"rise_pct": 0.3, "within_minutes": 5}

    def validate_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        opts = dict(self.default_options)
        opts.update(options or {})
        check_option_names(self.name, opts, self.option_names)
        return {
            "rise_pct": positive_number(self.name, "rise_pct", opts["rise_pct"]),
            "within_minutes": int(positive_number(self.name, "within_minutes", opts["within_minutes"])),
        }

    def describe(self, options: Optional[Dict[str, Any]] = None) -> str:
        opts = self.validate_options(options)
        return (
            f"Quick Rise: {opts['rise_pct']}% rise from the open within "
            f"{opts['within_minutes']} minutes"
        )

    def to_query_fragment(self, options: Optional[Dict[str, Any]] = None) -> str:
        opts = self.validate_options(options)
        threshold = opts["rise_pct"] / 100
        minutes = opts["within_minutes"]
        return f"""
      SELECT
        m.trade_date,
        m.year,
        m.market_open,
        e.timestamp AS entry_time,
        e.open AS entry_price,
        (w.window_high - m.market_open) / m.market_open AS rise_pct,
        'long' AS direction
      FROM market_open_prices m
      JOIN (
        SELECT s.trade_date, MAX(s.high) AS window_high
        FROM session_bars s
        JOIN market_open_prices mo ON s.trade_date = mo.trade_date
        WHERE s.timestamp < mo.market_open_time + INTERVAL {minutes} MINUTE
        GROUP BY s.trade_date
      ) w ON w.trade_date = m.trade_date
      JOIN session_bars e
        ON e.trade_date = m.trade_date
       AND e.timestamp = m.market_open_time + INTERVAL {minutes} MINUTE
      WHERE (w.window_high - m.market_open) / m.market_open >= {threshold}
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
        rise = (float(window["High"].max()) - market_open) / market_open
        if rise < opts["rise_pct"] / 100:
            return None
        entry = entry_rows.iloc[0]
        return make_signal(entry, entry["Open"], self.direction)
