#!/usr/bin/env python3
"""
On-demand LLM chart analysis

Runs the configured LLM confirmation screen against one chart image without a
backtest: same prompts, call count, temperatures and agreement threshold.

Usage:
    python llm_analyze.py charts/quick-rise/SPY_quick-rise_20240103_masked.png
    python llm_analyze.py chart.png --direction short --ticker QQQ --date 2024-02-05 --price 431.20
"""

import argparse
import datetime
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from config_utils import (
    BacktestConfig,
    add_config_override_argument,
    apply_config_overrides,
    load_config,
    parse_backtest_config,
)
from errors import ConfigError, LlmCallError
from patterns import EnrichedSignal
from screens import LlmConfirmationScreen, ScreenDecision
from time_utils import MARKET_TZ, to_market_time

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
RULE = "-" * 51
ACTION_MARKERS = {"long": "[UP]", "short": "[DOWN]"}


def build_signal(config: BacktestConfig, ticker: Optional[str], trade_date: Optional[str], price: Optional[float]):
    """Signal for a chart that did not come out of a backtest; missing fields get placeholders."""
    now = pd.Timestamp.now(tz=MARKET_TZ)
    trade_date = trade_date or now.strftime("%Y-%m-%d")
    direction = None if config.direction == "llm_decides" else config.direction
    return EnrichedSignal(
        timestamp=to_market_time(f"{trade_date} {now.strftime('%H:%M:%S')}"),
        price=100.0 if price is None else float(price),
        type="entry",
        direction=direction,
        ticker=ticker or "TICKER",
        trade_date=trade_date,
    )


def format_analysis_header(chart_path: str, config: BacktestConfig) -> str:
    screen = config.screen
    direction = "LLM Decides" if config.direction == "llm_decides" else config.direction.upper()
    return "\n".join(
        [
            f"\nAnalyzing chart: {os.path.basename(chart_path)}",
            f"Direction: {direction}",
            f"Model: {screen.model_name}",
            f"Calls: {screen.num_calls}",
            f"Threshold: {screen.agreement_threshold}",
            RULE,
        ]
    )


def format_analysis_result(decision: ScreenDecision, config: BacktestConfig, verbose: bool = False) -> str:
    lines = ["\nLLM Analysis Results:", f"Proceed with trade: {'YES' if decision.proceed else 'NO'}"]
    if decision.direction:
        lines.append(f"Suggested direction: {decision.direction.upper()}")
        if config.direction != "llm_decides":
            match = "MATCHES" if decision.direction == config.direction else "DIFFERS FROM"
            lines.append(f"{match} your suggested {config.direction.upper()} direction")
    if decision.rationale:
        lines.append(f"\nRationale: {decision.rationale}")

    if decision.debug_responses:
        lines.append("\nIndividual LLM Responses:")
        for i, response in enumerate(decision.debug_responses, 1):
            marker = ACTION_MARKERS.get(response.action, "[WAIT]")
            lines.append(f"Response #{i}: {marker} {response.action.upper()}")
            if response.rationalization:
                lines.append(f'"{response.rationalization}"')
            if response.error:
                lines.append(f"Error: {response.error}")

    lines.append(f"\nLLM Cost: ${decision.cost:.6f}")

    if verbose and decision.debug_responses:
        lines.append("\nDetailed LLM Response Data:")
        for i, response in enumerate(decision.debug_responses, 1):
            lines.append(f"Response #{i} Cost: ${response.cost:.6f}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analyze a chart image with the configured LLM confirmation screen",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ask the screen about a long entry
  python llm_analyze.py charts/quick-rise/SPY_quick-rise_20240103_masked.png

  # Short, with the signal details shown in the prompt context
  python llm_analyze.py chart.png --direction short --ticker QQQ --date 2024-02-05 --price 431.20
        """,
    )
    parser.add_argument("image_path", help="Path to the chart image to analyze")
    parser.add_argument(
        "--direction",
        choices=["long", "short"],
        default=None,
        help="Direction to confirm (default: the configured direction)",
    )
    parser.add_argument("--ticker", default=None, help="Ticker symbol (for logging only)")
    parser.add_argument("--date", default=None, help="Trade date YYYY-MM-DD (for logging only)")
    parser.add_argument("--price", type=float, default=None, help="Current price (for logging only)")
    parser.add_argument("--verbose", action="store_true", help="Show per-call costs and debug logging")
    parser.add_argument("--config", default=None, help="Path to config.json")
    add_config_override_argument(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    if not os.path.exists(args.image_path):
        logger.error("Image file not found at %s", args.image_path)
        return 1
    if args.date:
        try:
            datetime.datetime.strptime(args.date, "%Y-%m-%d")
        except ValueError:
            logger.error("--date must be YYYY-MM-DD, got %r", args.date)
            return 1

    try:
        raw = load_config(Path(args.config) if args.config else None)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    apply_config_overrides(raw, args.config_override or [], verbose=args.verbose)
    if args.direction:
        raw["direction"] = args.direction

    result = parse_backtest_config(raw)
    if not result.ok:
        logger.error("Configuration error: %s", result.error)
        return 1
    config = result.unwrap()

    if not config.screen.enabled:
        logger.error(
            "LLM confirmation screen is not enabled. Set llm_confirmation_screen.enabled to true in config.json "
            "or pass --config-override llm_confirmation_screen.enabled=true"
        )
        return 1

    signal = build_signal(config, args.ticker, args.date, args.price)
    print(format_analysis_header(args.image_path, config))

    try:
        decision = LlmConfirmationScreen().should_signal_proceed(
            signal, args.image_path, config.screen, config, debug=True
        )
    except LlmCallError as exc:
        logger.error("LLM analysis failed: %s", exc)
        return 1

    print(format_analysis_result(decision, config, verbose=args.verbose))
    return 0


if __name__ == "__main__":
    sys.exit(main())
