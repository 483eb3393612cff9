"""
Candlestick charts for the LLM screen and for trade review.

- Entry chart ("masked"): prior trading day plus the signal day up to and
  including the signal bar. Later bars are left out so the model cannot see
  the outcome. VWAP / SMA reference lines unless suppressed.
- Result chart ("complete"): the whole signal day with entry, exit, stop and
  target overlays.

Images are written with plotly's static export (kaleido). Any failure to
build or write a chart raises ChartGenerationError.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import pandas as pd
import plotly.graph_objects as go
import plotly.io as pio
from plotly.subplots import make_subplots

from errors import ChartGenerationError
from market_metrics import generate_market_metrics
from patterns.base import Signal
from time_utils import filter_regular_session, generate_timestamp, to_market_series, to_market_time

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 1200
DEFAULT_HEIGHT = 800


def chart_path_for(output_dir: str, pattern_name: str, ticker: str, trade_date: str, kind: str = "masked") -> str:
    """<output_dir>/<pattern>/<ticker>_<pattern>_<YYYYMMDD>_<kind>.png"""
    stamp = str(trade_date).replace("-", "")
    return os.path.join(output_dir, pattern_name, f"{ticker}_{pattern_name}_{stamp}_{kind}.png")


def scout_chart_path(output_dir: str, ticker: str, trade_date: str, run_stamp: Optional[str] = None) -> str:
    """<output_dir>/scout/<ticker>_scout_<YYYYMMDD>_<run stamp>_masked.png; one file per scout run."""
    day = str(trade_date).replace("-", "")
    run_stamp = run_stamp or generate_timestamp()
    return os.path.join(output_dir, "scout", f"{ticker}_scout_{day}_{run_stamp}_masked.png")


def cumulative_vwap(bars: pd.DataFrame) -> pd.Series:
    """Running VWAP across `bars` (one session). Zero-volume bars do not move it."""
    volume = pd.to_numeric(bars["Volume"], errors="coerce").fillna(0).clip(lower=0).astype(float)
    typical = (bars["High"] + bars["Low"] + bars["Close"]) / 3.0
    cum_volume = volume.cumsum()
    return ((typical * volume).cumsum() / cum_volume).where(cum_volume > 0)


def _prepare(bars: pd.DataFrame) -> pd.DataFrame:
    df = bars.copy()
    df["Datetime"] = to_market_series(df["Datetime"])
    return df.sort_values("Datetime").reset_index(drop=True)


def build_figure(df: pd.DataFrame, title: str) -> go.Figure:
    fig = make_subplots(rows=2, cols=1, shared_xaxes=True, row_heights=[0.7, 0.3], vertical_spacing=0.03)

    fig.add_trace(
        go.Candlestick(
            x=df["Datetime"],
            open=df["Open"],
            high=df["High"],
            low=df["Low"],
            close=df["Close"],
            name="Price",
            increasing=dict(line=dict(color="green", width=1), fillcolor="rgba(0,200,0,0.3)"),
            decreasing=dict(line=dict(color="red", width=1), fillcolor="rgba(200,0,0,0.3)"),
        ),
        row=1, col=1,
    )

    colors = ["green" if c >= o else "red" for o, c in zip(df["Open"], df["Close"])]
    fig.add_trace(
        go.Bar(x=df["Datetime"], y=df["Volume"], marker_color=colors, name="Volume", opacity=0.5),
        row=2, col=1,
    )

    # Keep overlay lines from squashing the candles
    y_min = float(df["Low"].min())
    y_max = float(df["High"].max())
    y_padding = (y_max - y_min) * 0.02
    vol_max = float(df["Volume"].max()) if len(df) else 0.0

    fig.update_layout(
        title=title,
        xaxis_rangeslider_visible=False,
        showlegend=False,
        yaxis=dict(range=[y_min - y_padding, y_max + y_padding]),
        yaxis2=dict(range=[0, vol_max * 1.05 if vol_max > 0 else 1]),
    )
    # Hide overnight gaps between sessions
    fig.update_xaxes(rangebreaks=[dict(bounds=[16, 9.5], pattern="hour"), dict(bounds=["sat", "mon"])])
    return fig


def write_chart(fig: go.Figure, path: str, width: int = DEFAULT_WIDTH, height: int = DEFAULT_HEIGHT) -> str:
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        pio.write_image(fig, path, width=width, height=height)
    except (OSError, ValueError, RuntimeError) as exc:
        raise ChartGenerationError(f"Could not write chart image: {exc}", path=path) from exc
    logger.debug("Wrote chart %s", path)
    return path


def generate_entry_chart(
    ticker: str,
    pattern_name: str,
    signal: Signal,
    bars: pd.DataFrame,
    output_dir: str,
    daily_bars: Optional[pd.DataFrame] = None,
    suppress_sma: bool = False,
    suppress_vwap: bool = False,
    width: int = DEFAULT_WIDTH,
    height: int = DEFAULT_HEIGHT,
    path: Optional[str] = None,
) -> str:
    """
    Render the masked chart shown to the LLM and return its path.

    Args:
        bars: intraday bars of the prior trading day and the signal day
        daily_bars: optional daily series used for the SMA reference line
        path: explicit image path; defaults to chart_path_for(..., "masked")
    """
    signal_ts = to_market_time(signal.timestamp)
    session = filter_regular_session(bars)
    if session.empty:
        raise ChartGenerationError("No regular-session bars to chart", ticker=ticker, date=str(signal_ts.date()))

    df = _prepare(session)
    df = df[df["Datetime"] <= signal_ts].reset_index(drop=True)
    if df.empty:
        raise ChartGenerationError("No bars at or before the signal", ticker=ticker, date=str(signal_ts.date()))

    trade_date = signal_ts.strftime("%Y-%m-%d")
    fig = build_figure(df, f"{ticker} {trade_date} {pattern_name} (entry {signal_ts.strftime('%H:%M')})")

    if not suppress_vwap:
        today = df[df["Datetime"].dt.date == signal_ts.date()]
        if not today.empty:
            fig.add_trace(
                go.Scatter(x=today["Datetime"], y=cumulative_vwap(today), mode="lines",
                           line=dict(color="orange", width=1.5), name="VWAP"),
                row=1, col=1,
            )

    if not suppress_sma:
        metrics = generate_market_metrics(bars, signal, daily_bars=daily_bars, suppress_vwap=True)
        if metrics.sma20 is not None:
            fig.add_hline(y=metrics.sma20, line_color="purple", line_dash="dot", row=1, col=1,
                          annotation_text="SMA20", annotation_position="top left")

    fig.add_annotation(x=signal_ts, y=float(signal.price), text="Signal", showarrow=True, arrowhead=2, row=1, col=1)

    path = path or chart_path_for(output_dir, pattern_name, ticker, trade_date, "masked")
    return write_chart(fig, path, width, height)


def generate_result_chart(
    ticker: str,
    pattern_name: str,
    trade,
    bars: pd.DataFrame,
    output_dir: str,
    width: int = DEFAULT_WIDTH,
    height: int = DEFAULT_HEIGHT,
) -> str:
    """Render the full signal day with the trade's entry/exit and risk levels."""
    session = filter_regular_session(bars)
    if session.empty:
        raise ChartGenerationError("No regular-session bars to chart", ticker=ticker, date=trade.trade_date)

    df = _prepare(session)
    df = df[df["Datetime"].dt.strftime("%Y-%m-%d") == trade.trade_date].reset_index(drop=True)
    if df.empty:
        raise ChartGenerationError("No bars on the trade date", ticker=ticker, date=trade.trade_date)

    color = "green" if trade.direction == "long" else "red"
    title = f"{ticker} {trade.trade_date} {pattern_name} {trade.direction} ({trade.return_pct * 100:+.2f}%)"
    fig = build_figure(df, title)

    if trade.entry_time:
        fig.add_annotation(x=to_market_time(trade.entry_time), y=trade.entry_price, text="Entry",
                           showarrow=True, arrowhead=2, arrowcolor=color, row=1, col=1)
    if trade.exit_time:
        fig.add_annotation(x=to_market_time(trade.exit_time), y=trade.exit_price,
                           text=f"Exit ({trade.exit_reason or 'n/a'})", showarrow=True, arrowhead=2, row=1, col=1)
    fig.add_hline(y=trade.entry_price, line_color=color, line_width=1, row=1, col=1)
    if trade.initial_stop_loss_price is not None:
        fig.add_hline(y=trade.initial_stop_loss_price, line_color="black", line_dash="dot", row=1, col=1,
                      annotation_text="Stop")
    if trade.initial_profit_target_price is not None:
        fig.add_hline(y=trade.initial_profit_target_price, line_color=color, line_dash="dash", row=1, col=1,
                      annotation_text="Target")

    path = chart_path_for(output_dir, pattern_name, ticker, trade.trade_date, "complete")
    return write_chart(fig, path, width, height)
