#!/usr/bin/env python3
"""
Entry scout: chart and screen the market as of one moment

Takes the prior trading day plus the trade date up to --time from the local
bar files, uses the last regular-session bar as the entry signal, writes a
masked chart under <charts dir>/scout/ and, when the LLM screen is enabled,
prints the screen's verdict with manual trading instructions.

Usage:
    python scout.py --date 2024-01-03 --time 10:15
    python scout.py --ticker QQQ --date 2024-02-05 --time 11:00 --no-llm
"""

import argparse
import datetime
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from chart_renderer import generate_entry_chart, scout_chart_path
from config_utils import (
    BacktestConfig,
    add_config_override_argument,
    apply_config_overrides,
    load_config,
    parse_backtest_config,
)
from data_loader import BarStore
from errors import ChartGenerationError, ConfigError, LlmCallError, QueryExecutionError
from market_metrics import generate_market_metrics_for_prompt
from patterns import EnrichedSignal
from screens import LlmConfirmationScreen, ScreenDecision, run_entry_screen
from time_utils import MARKET_TZ, filter_regular_session, is_regular_session, to_market_series, to_market_time

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
SCOUT_PATTERN = "scout"


def resolve_analysis_time(trade_date: Optional[str], clock: Optional[str]) -> pd.Timestamp:
    """Market-time moment to scout; today and/or now when not given."""
    now = pd.Timestamp.now(tz=MARKET_TZ)
    trade_date = trade_date or now.strftime("%Y-%m-%d")
    clock = clock or now.strftime("%H:%M")
    try:
        stamp = datetime.datetime.strptime(f"{trade_date} {clock}", "%Y-%m-%d %H:%M")
    except ValueError as exc:
        raise ConfigError(f"--date/--time must be YYYY-MM-DD and HH:MM, got {trade_date!r} {clock!r}") from exc
    return to_market_time(stamp)


def create_entry_signal(bars: pd.DataFrame, analysis_time: pd.Timestamp, config: BacktestConfig) -> EnrichedSignal:
    """Signal at the close of the last regular-session bar at or before `analysis_time`."""
    session = filter_regular_session(bars)
    if not session.empty:
        stamps = to_market_series(session["Datetime"])
        session = session[stamps <= analysis_time]
    if session.empty:
        raise ValueError(f"No regular-session bars at or before {analysis_time:%Y-%m-%d %H:%M}")
    last = session.sort_values("Datetime").iloc[-1]
    signal_ts = to_market_time(last["Datetime"])
    return EnrichedSignal(
        timestamp=signal_ts,
        price=float(last["Close"]),
        type="entry",
        direction=None if config.direction == "llm_decides" else config.direction,
        ticker=config.ticker,
        trade_date=analysis_time.strftime("%Y-%m-%d"),
    )


def format_trading_instructions(entry_price: float, decision: ScreenDecision) -> str:
    stop = decision.averaged_proposed_stop_loss
    target = decision.averaged_proposed_profit_target
    lines = ["\nManual Trading Instructions:", f"Entry Price: ${entry_price:.2f}"]
    if stop is not None:
        risk = abs(entry_price - stop)
        lines.append(f"Stop Loss: ${stop:.2f} ({risk / entry_price * 100:.2f}% risk)")
    if target is not None:
        reward = abs(target - entry_price)
        lines.append(f"Profit Target: ${target:.2f} ({reward / entry_price * 100:.2f}% gain)")
    if stop is not None and target is not None and abs(entry_price - stop) > 0:
        ratio = abs(target - entry_price) / abs(entry_price - stop)
        lines.append(f"Risk/Reward Ratio: 1:{ratio:.2f}")
    return "\n".join(lines)


def format_scout_result(signal: EnrichedSignal, decision: ScreenDecision) -> str:
    lines = ["\nLLM Analysis Results:", f"Decision: {'ENTER TRADE' if decision.proceed else 'DO NOT ENTER'}"]
    if decision.direction:
        lines.append(f"Direction: {decision.direction.upper()}")
    if decision.proceed and decision.direction:
        lines.append(format_trading_instructions(float(signal.price), decision))
    if decision.rationale:
        lines.append(f"\nLLM Rationale: {decision.rationale}")

    if decision.debug_responses:
        lines.append("\nIndividual LLM Responses:")
        for i, response in enumerate(decision.debug_responses, 1):
            lines.append(f"LLM {i}: {(response.action or 'no action').upper()}")
            if response.rationalization:
                lines.append(f"   Reasoning: {response.rationalization}")
            if response.confidence is not None:
                lines.append(f"   Confidence: {response.confidence:g}/10")
            if response.proposed_stop_loss is not None:
                lines.append(f"   Proposed Stop: ${response.proposed_stop_loss:.2f}")
            if response.proposed_profit_target is not None:
                lines.append(f"   Proposed Target: ${response.proposed_profit_target:.2f}")
            lines.append(f"   Cost: ${response.cost:.6f}")

    if decision.cost:
        lines.append(f"Total LLM Cost: ${decision.cost:.6f}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Chart the market as of one moment and ask the LLM screen about an entry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scout SPY at 10:15 on a past session
  python scout.py --date 2024-01-03 --time 10:15

  # Chart only, no LLM calls
  python scout.py --ticker QQQ --date 2024-02-05 --time 11:00 --no-llm
        """,
    )
    parser.add_argument("--ticker", default=None, help="Ticker symbol (default from config.json)")
    parser.add_argument("--date", default=None, help="Trade date YYYY-MM-DD (default: today)")
    parser.add_argument("--time", default=None, help="Entry time HH:MM in market time (default: now)")
    parser.add_argument("--no-llm", action="store_true", help="Write the chart without calling the LLM")
    parser.add_argument("--verbose", action="store_true", help="Show individual LLM responses and debug logging")
    parser.add_argument("--config", default=None, help="Path to config.json")
    add_config_override_argument(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    try:
        raw = load_config(Path(args.config) if args.config else None)
        analysis_time = resolve_analysis_time(args.date, args.time)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    apply_config_overrides(raw, args.config_override or [], verbose=args.verbose)
    if args.ticker:
        raw["ticker"] = args.ticker

    result = parse_backtest_config(raw)
    if not result.ok:
        logger.error("Configuration error: %s", result.error)
        return 1
    config = result.unwrap()

    trade_date = analysis_time.strftime("%Y-%m-%d")
    print(f"\nEntry Scout: {config.ticker}")
    print(f"Analysis Time: {analysis_time:%Y-%m-%d %H:%M} ET")
    if not is_regular_session(analysis_time):
        logger.warning("%s is outside the regular session; using the last session bar before it",
                       analysis_time.strftime("%H:%M"))

    store = BarStore(config.ticker, config.timeframe, cache_dir=config.cache_dir, data_dir=config.data_dir)
    charts = config.charts
    try:
        bars = store.get_context_window(trade_date)
        daily_bars = None if charts.suppress_sma else store.get_daily_bars(trade_date)
    except QueryExecutionError as exc:
        logger.error("Could not load bars for %s on %s: %s", config.ticker, trade_date, exc)
        return 1

    try:
        signal = create_entry_signal(bars, analysis_time, config)
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    print(f"Entry signal: {signal.timestamp:%Y-%m-%d %H:%M} @ ${signal.price:.2f}")

    metrics_text = generate_market_metrics_for_prompt(
        bars, signal, daily_bars, suppress_sma=charts.suppress_sma, suppress_vwap=charts.suppress_vwap
    )
    try:
        chart_path = generate_entry_chart(
            config.ticker,
            SCOUT_PATTERN,
            signal,
            bars,
            charts.output_dir,
            daily_bars=daily_bars,
            suppress_sma=charts.suppress_sma,
            suppress_vwap=charts.suppress_vwap,
            width=charts.width,
            height=charts.height,
            path=scout_chart_path(charts.output_dir, config.ticker, trade_date),
        )
    except ChartGenerationError as exc:
        logger.error("Failed to generate chart: %s", exc)
        return 1
    print(f"Chart saved to: {chart_path}")

    if args.no_llm or not config.screen.enabled:
        print("LLM screen not enabled; chart only.")
        return 0

    try:
        decision = run_entry_screen(
            LlmConfirmationScreen(),
            signal,
            chart_path,
            config.screen,
            config,
            context={"market_metrics_text": metrics_text, "bars": bars},
            debug=args.verbose,
            market_metrics_text=metrics_text,
        )
    except LlmCallError as exc:
        logger.error("LLM analysis failed: %s", exc)
        print("Chart generated successfully, but LLM analysis failed.")
        return 1

    print(format_scout_result(signal, decision))
    return 0


if __name__ == "__main__":
    sys.exit(main())
