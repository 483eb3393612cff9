"""
Bar access for the backtest: per-day bars and daily series.

Days are served from an in-memory LRU, then from the on-disk CSV cache, then
from the ticker file through the query engine (and written back to the cache).
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Optional

import pandas as pd

from cache_utils import DEFAULT_CACHE_DIR, empty_bars, load_cached_day, normalize_bars, save_day
from query_engine import (
    DEFAULT_DATA_DIR,
    build_bars_query,
    build_daily_bars_query,
    fetch_rows_from_query,
)
from time_utils import filter_regular_session, previous_trading_day

logger = logging.getLogger(__name__)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()


class BarStore:
    """Manages OHLCV bars for one ticker/timeframe, keyed by trading date"""

    def __init__(
        self,
        ticker: str,
        timeframe: str = "1min",
        cache_dir: Optional[Path] = DEFAULT_CACHE_DIR,
        data_dir: str = DEFAULT_DATA_DIR,
        max_mem_items: int = 64,
        query_runner: Callable[..., list] = fetch_rows_from_query,
    ):
        self.ticker = ticker
        self.timeframe = timeframe
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.data_dir = data_dir
        self.query_runner = query_runner
        # Simple in-memory LRU to avoid repeated disk reads for the same day
        self._mem: "OrderedDict[str, pd.DataFrame]" = OrderedDict()
        self._mem_max = int(max_mem_items)

    def _remember(self, key: str, df: pd.DataFrame):
        self._mem[key] = df
        self._mem.move_to_end(key)
        if len(self._mem) > self._mem_max:
            self._mem.popitem(last=False)

    def get_day_bars(self, day) -> pd.DataFrame:
        """All bars of one calendar day (extended hours included)."""
        date_str = _as_date(day).strftime("%Y-%m-%d")
        if date_str in self._mem:
            self._mem.move_to_end(date_str)
            return self._mem[date_str]

        df = None
        if self.cache_dir is not None:
            df = load_cached_day(self.cache_dir, self.ticker, date_str, self.timeframe)
        if df is None:
            logger.debug("Cache miss for %s %s, querying ticker file", self.ticker, date_str)
            rows = self.query_runner(
                build_bars_query(self.ticker, self.timeframe, date_str, date_str, self.data_dir),
                ticker=self.ticker,
                date_range=date_str,
            )
            df = normalize_bars(rows)
            if self.cache_dir is not None and not df.empty:
                save_day(self.cache_dir, self.ticker, date_str, self.timeframe, df)
        self._remember(date_str, df)
        return df

    def find_prior_trading_days(self, day, count: int = 1, max_lookback: int = 10) -> List[date]:
        """Most recent `count` days strictly before `day` that have regular-session bars."""
        found: List[date] = []
        probe = _as_date(day)
        for _ in range(max_lookback):
            probe = previous_trading_day(probe)
            if not filter_regular_session(self.get_day_bars(probe)).empty:
                found.append(probe)
                if len(found) >= count:
                    break
        return found

    def get_context_window(self, day, prior_days: int = 1) -> pd.DataFrame:
        """Bars for the signal day plus at least `prior_days` earlier trading days."""
        frames = []
        for prior in sorted(self.find_prior_trading_days(day, prior_days)):
            frames.append(self.get_day_bars(prior))
        frames.append(self.get_day_bars(day))
        frames = [f for f in frames if f is not None and not f.empty]
        if not frames:
            return empty_bars()
        return pd.concat(frames, ignore_index=True).sort_values("Datetime").reset_index(drop=True)

    def get_daily_bars(self, before_day, days: int = 20) -> pd.DataFrame:
        """Regular-session daily bars preceding `before_day`, oldest first."""
        date_str = _as_date(before_day).strftime("%Y-%m-%d")
        rows = self.query_runner(
            build_daily_bars_query(self.ticker, self.timeframe, date_str, days, self.data_dir),
            ticker=self.ticker,
            date_range=f"<{date_str}",
        )
        return normalize_bars(rows)

    def get_bars_after(self, day, entry_time) -> pd.DataFrame:
        """Bars of `day` from `entry_time` onwards, used for exit evaluation."""
        df = self.get_day_bars(day)
        if df.empty:
            return df
        cutoff = pd.Timestamp(entry_time)
        if cutoff.tzinfo is None:
            cutoff = cutoff.tz_localize(df["Datetime"].dt.tz)
        return df[df["Datetime"] >= cutoff].reset_index(drop=True)

