"""
Market context for a single entry signal

Derives previous close, today's open/high/low, the opening gap, VWAP and the
20-day SMA from the bars available at signal time, then renders them as the
display lines and the prompt text handed to the LLM screen.

Only regular-session bars (09:30-16:00 ET) feed these numbers. A suppressed
metric is neither computed nor mentioned in the returned text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import pandas as pd

from patterns.base import Signal
from time_utils import filter_regular_session, to_market_series, to_market_time

SMA_PERIOD = 20
AT_TOLERANCE = 0.01


@dataclass
class GapInfo:
    direction: str  # "UP" | "DOWN" | "NONE"
    amount: float
    percent: float

    @property
    def text(self) -> str:
        if self.direction == "UP":
            return f"GAP UP: +${self.amount:.2f} (+{self.percent:.2f}%)"
        if self.direction == "DOWN":
            return f"GAP DOWN: ${self.amount:.2f} (-{self.percent:.2f}%)"
        return "NO GAP: $0.00 (0.00%)"


@dataclass
class MarketMetrics:
    current_price: float
    entry_time_label: str
    previous_close: Optional[float] = None
    today_open: Optional[float] = None
    today_high: Optional[float] = None
    today_low: Optional[float] = None
    gap: Optional[GapInfo] = None
    vwap: Optional[float] = None
    vwap_position: Optional[str] = None
    vwap_difference: Optional[float] = None
    vwap_difference_percent: Optional[float] = None
    sma20: Optional[float] = None
    sma_position: Optional[str] = None
    sma_difference: Optional[float] = None
    sma_difference_percent: Optional[float] = None
    vwap_vs_sma_position: Optional[str] = None
    line1: str = ""
    line2: str = ""
    vwap_info: str = ""
    sma_info: str = ""
    vwap_vs_sma_info: str = ""
    prompt_text: str = ""


def _session_days(bars: pd.DataFrame) -> pd.Series:
    return to_market_series(bars["Datetime"]).dt.date


def calculate_vwap(bars: pd.DataFrame) -> Optional[float]:
    """Σ(typical × volume) / Σ(volume); bars without positive volume are skipped."""
    if bars is None or bars.empty:
        return None
    volume = pd.to_numeric(bars["Volume"], errors="coerce")
    usable = bars[volume > 0]
    if usable.empty:
        return None
    vol = volume[volume > 0].astype(float)
    typical = (usable["High"] + usable["Low"] + usable["Close"]) / 3.0
    total_volume = float(vol.sum())
    if total_volume <= 0:
        return None
    return float((typical * vol).sum() / total_volume)


def aggregate_to_daily(bars: pd.DataFrame) -> pd.DataFrame:
    """One bar per calendar day: first open, max high, min low, last close, summed volume."""
    if bars is None or bars.empty:
        return pd.DataFrame(columns=["Date", "Open", "High", "Low", "Close", "Volume"])
    df = bars.sort_values("Datetime").copy()
    df["Date"] = _session_days(df)
    daily = df.groupby("Date", sort=True).agg(
        Open=("Open", "first"),
        High=("High", "max"),
        Low=("Low", "min"),
        Close=("Close", "last"),
        Volume=("Volume", "sum"),
    )
    return daily.reset_index()


def calculate_sma(daily_bars: pd.DataFrame, period: int = SMA_PERIOD) -> Optional[float]:
    if daily_bars is None or len(daily_bars) < period:
        return None
    return float(daily_bars["Close"].astype(float).iloc[-period:].mean())


def classify_position(price: float, reference: float) -> Tuple[str, float, float]:
    """(position, price - reference, percent difference) with a $0.01 band for 'at'."""
    diff = price - reference
    pct = diff / reference * 100 if reference else 0.0
    if abs(diff) < AT_TOLERANCE:
        return "at", diff, pct
    return ("above" if diff > 0 else "below"), diff, pct


def calculate_gap(previous_close: Optional[float], today_open: Optional[float]) -> Optional[GapInfo]:
    if previous_close is None or today_open is None or previous_close == 0:
        return None
    amount = today_open - previous_close
    percent = abs(amount) / previous_close * 100
    if amount > 0:
        return GapInfo("UP", amount, percent)
    if amount < 0:
        return GapInfo("DOWN", amount, percent)
    return GapInfo("NONE", 0.0, 0.0)


def _money(value: Optional[float]) -> str:
    return f"${value:.2f}" if value is not None else "N/A"


def _relation_text(subject: str, price: float, diff: float, position: str, label: str, reference: float) -> str:
    return f"{subject} of ${price:.2f} is ${abs(diff):.2f} {position.upper()} {label} of ${reference:.2f}."


def generate_market_metrics(
    bars: pd.DataFrame,
    signal: Signal,
    daily_bars: Optional[pd.DataFrame] = None,
    suppress_sma: bool = False,
    suppress_vwap: bool = False,
) -> MarketMetrics:
    """
    Build the market context for `signal`.

    Args:
        bars: intraday bars covering at least the signal day and the prior trading day
        signal: entry/reference signal; its price is the "current" price
        daily_bars: optional externally supplied daily series for the SMA
        suppress_sma: skip SMA entirely (no value, no text)
        suppress_vwap: skip VWAP entirely (no value, no text)
    """
    signal_ts = to_market_time(signal.timestamp)
    signal_day = signal_ts.date()
    price = float(signal.price)

    metrics = MarketMetrics(current_price=price, entry_time_label=signal_ts.strftime("%H:%M"))

    session = filter_regular_session(bars)
    if not session.empty:
        session = session.sort_values("Datetime")
        stamps = to_market_series(session["Datetime"])
        # Bars after the signal are not known yet at call time
        session = session[stamps <= signal_ts]
        days = _session_days(session)

        prior = session[days < signal_day]
        if not prior.empty:
            prior_days = _session_days(prior)
            last_day = prior[prior_days == prior_days.max()]
            metrics.previous_close = float(last_day["Close"].iloc[-1])

        today = session[days == signal_day]
        if not today.empty:
            metrics.today_open = float(today["Open"].iloc[0])
            metrics.today_high = float(today["High"].max())
            metrics.today_low = float(today["Low"].min())
    else:
        today = session

    metrics.gap = calculate_gap(metrics.previous_close, metrics.today_open)

    if not suppress_vwap:
        metrics.vwap = calculate_vwap(today)
        if metrics.vwap is not None:
            pos, diff, pct = classify_position(price, metrics.vwap)
            metrics.vwap_position = pos
            metrics.vwap_difference = diff
            metrics.vwap_difference_percent = pct

    if not suppress_sma:
        if daily_bars is not None and not daily_bars.empty:
            series = daily_bars
        else:
            series = aggregate_to_daily(session)
        metrics.sma20 = calculate_sma(series)
        if metrics.sma20 is not None:
            pos, diff, pct = classify_position(price, metrics.sma20)
            metrics.sma_position = pos
            metrics.sma_difference = diff
            metrics.sma_difference_percent = pct

    _render_text(metrics, suppress_sma, suppress_vwap)
    return metrics


def _render_text(metrics: MarketMetrics, suppress_sma: bool, suppress_vwap: bool):
    line1 = f"Prev Close: {_money(metrics.previous_close)} | Today Open: {_money(metrics.today_open)}"
    if metrics.gap is not None:
        line1 += f" | {metrics.gap.text}"
    metrics.line1 = line1
    metrics.line2 = (
        f"Today H/L: {_money(metrics.today_high)}/{_money(metrics.today_low)} | "
        f"Current: ${metrics.current_price:.2f} @ {metrics.entry_time_label}"
    )

    lines = [metrics.line1, metrics.line2]

    if not suppress_vwap:
        if metrics.vwap is not None:
            metrics.vwap_info = _relation_text(
                "Current price", metrics.current_price, metrics.vwap_difference,
                metrics.vwap_position, "VWAP", metrics.vwap,
            )
        else:
            metrics.vwap_info = "VWAP data is not available."
        lines.append(metrics.vwap_info)

    if not suppress_sma:
        if metrics.sma20 is not None:
            metrics.sma_info = _relation_text(
                "Current price", metrics.current_price, metrics.sma_difference,
                metrics.sma_position, "SMA", metrics.sma20,
            )
        else:
            metrics.sma_info = "20-Day SMA data is not available."
        lines.append(metrics.sma_info)

    if not suppress_sma and not suppress_vwap and metrics.vwap is not None and metrics.sma20 is not None:
        pos, diff, _ = classify_position(metrics.vwap, metrics.sma20)
        metrics.vwap_vs_sma_position = pos
        metrics.vwap_vs_sma_info = _relation_text("VWAP", metrics.vwap, diff, pos, "SMA", metrics.sma20)
        lines.append(metrics.vwap_vs_sma_info)

    metrics.prompt_text = "\n".join(lines)


def generate_market_metrics_for_prompt(
    bars: pd.DataFrame,
    signal: Signal,
    daily_bars: Optional[pd.DataFrame] = None,
    suppress_sma: bool = False,
    suppress_vwap: bool = False,
) -> str:
    return generate_market_metrics(bars, signal, daily_bars, suppress_sma, suppress_vwap).prompt_text
