"""
Shared numeric helpers: true range / ATR, return statistics, compounded growth
and console formatting.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd


def true_range(high: float, low: float, prev_close: Optional[float] = None) -> float:
    """Greatest of H-L, |H-prevC|, |L-prevC|; just H-L when there is no previous bar."""
    if prev_close is None:
        return high - low
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def _true_ranges(bars: pd.DataFrame) -> np.ndarray:
    highs = bars["High"].to_numpy(dtype=float)
    lows = bars["Low"].to_numpy(dtype=float)
    closes = bars["Close"].to_numpy(dtype=float)
    out = np.empty(len(bars))
    for i in range(len(bars)):
        prev_close = closes[i - 1] if i > 0 else None
        out[i] = true_range(highs[i], lows[i], prev_close)
    return out


def average_true_range_for_day(bars: pd.DataFrame) -> Optional[float]:
    """Mean true range across every bar of a single session."""
    if bars is None or bars.empty:
        return None
    return float(_true_ranges(bars).mean())


def mean_return(returns: Iterable[float]) -> float:
    values = list(returns)
    return float(np.mean(values)) if values else 0.0


def median_return(returns: Iterable[float]) -> float:
    values = list(returns)
    # np.median averages the two middle values for even counts
    return float(np.median(values)) if values else 0.0


def std_dev_return(returns: Iterable[float]) -> float:
    """Population standard deviation (divide by N)."""
    values = list(returns)
    return float(np.std(values, ddof=0)) if values else 0.0


def win_rate(winning: int, total: int) -> float:
    """Fraction in [0, 1]; 0 when there are no trades."""
    return winning / total if total > 0 else 0.0


def calculate_portfolio_growth(returns: List[float], initial_capital: float = 10000) -> Dict[str, float]:
    capital = float(initial_capital)
    for r in returns:
        capital *= 1 + r
    growth_pct = (capital / initial_capital - 1) * 100 if initial_capital else 0.0
    return {
        "initial_capital": float(initial_capital),
        "final_capital": capital,
        "total_dollar_return": capital - initial_capital,
        "percentage_growth": growth_pct,
    }


def format_dollar(value: float) -> str:
    return f"${value:.2f}"


def format_percent(value: float) -> str:
    """0.0123 -> '1.23%'"""
    return f"{value * 100:.2f}%"


def trade_percentage(total_trades: int, trading_days: int) -> str:
    if not trading_days:
        return "0.0"
    return f"{total_trades / trading_days * 100:.1f}"
