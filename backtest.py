#!/usr/bin/env python3
"""
Backtesting engine for intraday entry patterns with optional LLM confirmation

Candidates come from the pattern's SQL over the ticker's bar file. Each one is
charted, optionally screened by the LLM, and (when confirmed) played forward
through the configured exit strategies into a Trade. Statistics are finalized
once at the end and printed as a report.

Usage:
    python backtest.py --from 2023-01-01 --to 2023-12-31
    python backtest.py --ticker QQQ --entry-pattern quick-fall --direction short
    python backtest.py --llm-screen --generate-charts --config-override llm_confirmation_screen.num_calls=5
"""

import argparse
import datetime
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from calculations import average_true_range_for_day
from chart_renderer import generate_entry_chart, generate_result_chart
from config_utils import (
    BacktestConfig,
    DIRECTIONS,
    TIMEFRAMES,
    add_config_override_argument,
    apply_config_overrides,
    load_config,
    parse_backtest_config,
)
from data_loader import BarStore
from errors import (
    ChartGenerationError,
    ConfigError,
    OutputWriteError,
    QueryExecutionError,
    RECOVERABLE_ERRORS,
)
from exit_strategies import (
    TrailingStopStrategy,
    apply_slippage,
    calculate_exit_prices,
    create_exit_strategies,
    evaluate_exit_strategies,
)
from market_metrics import generate_market_metrics
from patterns import EnrichedSignal, available_patterns
from query_engine import build_analysis_query, build_trading_days_query, fetch_rows_from_query
from report import print_report
from result_output import BacktestDetails, write_llm_result
from screens import EntryScreen, LlmConfirmationScreen, ScreenDecision, run_entry_screen
from time_utils import (
    filter_regular_session,
    get_display_timezone,
    get_timezone_label_for_date,
    to_market_time,
)
from trade_mapper import Trade, map_raw_row_to_trade, to_float, to_int
from trade_stats import (
    TotalStats,
    add_llm_cost,
    finalize,
    new_total_stats,
    record_rejection,
    record_trade,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def resolve_trade_direction(
    decision: ScreenDecision, configured: str, row_direction: Optional[str], pattern_direction: str
) -> str:
    """Screen verdict first, then a fixed configured direction, then the candidate row, then the pattern."""
    if decision.direction in ("long", "short"):
        return decision.direction
    if configured in ("long", "short"):
        return configured
    if row_direction in ("long", "short"):
        return row_direction
    return pattern_direction


class BacktestEngine:
    """Runs one ticker/pattern/date-range backtest"""

    def __init__(
        self,
        config: BacktestConfig,
        bar_store: Optional[BarStore] = None,
        screen: Optional[EntryScreen] = None,
        query_runner=fetch_rows_from_query,
        entry_chart_renderer=generate_entry_chart,
        result_chart_renderer=generate_result_chart,
        output_writer=write_llm_result,
    ):
        self.config = config
        self.query_runner = query_runner
        self.bars = bar_store or BarStore(
            config.ticker,
            config.timeframe,
            cache_dir=config.cache_dir,
            data_dir=config.data_dir,
            query_runner=query_runner,
        )
        if screen is None and config.screen.enabled:
            screen = LlmConfirmationScreen()
        self.screen = screen
        self.entry_chart_renderer = entry_chart_renderer
        self.result_chart_renderer = result_chart_renderer
        self.output_writer = output_writer
        self.exit_strategies = create_exit_strategies(config.exit_strategies)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query_context(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            "ticker": cfg.ticker,
            "date_range": f"{cfg.date_from}..{cfg.date_to}",
            "pattern": cfg.pattern_name,
        }

    def fetch_candidates(self) -> List[Dict[str, Any]]:
        """Candidate rows in the order the query returns them. QueryExecutionError is fatal."""
        cfg = self.config
        sql = build_analysis_query(
            cfg.ticker,
            cfg.timeframe,
            cfg.date_from,
            cfg.date_to,
            cfg.entry_pattern.to_query_fragment(),
            cfg.data_dir,
        )
        if cfg.debug:
            logger.debug("Analysis query:\n%s", sql)
        return self.query_runner(sql, **self._query_context())

    def fetch_trading_days(self) -> Dict[int, int]:
        cfg = self.config
        sql = build_trading_days_query(cfg.ticker, cfg.timeframe, cfg.date_from, cfg.date_to, cfg.data_dir)
        days: Dict[int, int] = {}
        for row in self.query_runner(sql, **self._query_context()):
            year = to_int(row.get("year"))
            count = to_int(row.get("total_trading_days"))
            if year is not None and count is not None:
                days[year] = count
        return days

    # ------------------------------------------------------------------
    # Per-candidate steps
    # ------------------------------------------------------------------

    def _entry_atr(self, trade_date: str) -> Optional[float]:
        prior = self.bars.find_prior_trading_days(trade_date, 1)
        if not prior:
            return None
        return average_true_range_for_day(filter_regular_session(self.bars.get_day_bars(prior[0])))

    def _market_context(self, signal: EnrichedSignal, bars: pd.DataFrame):
        """(daily bars for the SMA line, prompt text) for one signal."""
        charts = self.config.charts
        daily_bars = None
        if not charts.suppress_sma:
            daily_bars = self.bars.get_daily_bars(signal.trade_date)
        metrics = generate_market_metrics(
            bars, signal, daily_bars, suppress_sma=charts.suppress_sma, suppress_vwap=charts.suppress_vwap
        )
        return daily_bars, metrics.prompt_text or None

    def _entry_chart(self, signal: EnrichedSignal, bars: pd.DataFrame, daily_bars) -> Optional[str]:
        cfg = self.config
        if not (cfg.charts.generate or cfg.screen.enabled):
            return None
        try:
            return self.entry_chart_renderer(
                cfg.ticker,
                cfg.pattern_name,
                signal,
                bars,
                cfg.charts.output_dir,
                daily_bars=daily_bars,
                suppress_sma=cfg.charts.suppress_sma,
                suppress_vwap=cfg.charts.suppress_vwap,
                width=cfg.charts.width,
                height=cfg.charts.height,
            )
        except ChartGenerationError as exc:
            logger.warning("Chart generation failed for %s on %s: %s", cfg.ticker, signal.trade_date, exc)
            return None

    def build_trade(
        self,
        row: Dict[str, Any],
        signal: EnrichedSignal,
        decision: ScreenDecision,
        direction: str,
        chart_path: Optional[str] = None,
    ) -> Optional[Trade]:
        """Play a confirmed candidate forward through the exit strategies. None when no bar follows entry."""
        exits = self.config.exit_strategies
        is_long = direction == "long"
        entry_ts = to_market_time(signal.timestamp)
        base_price = float(signal.price)
        entry_price = apply_slippage(base_price, is_long, exits.slippage, is_entry=True)
        atr = self._entry_atr(signal.trade_date)

        stop, target = calculate_exit_prices(
            entry_price,
            atr,
            is_long,
            exits.stop_loss if "stopLoss" in exits.enabled else None,
            exits.profit_target if "profitTarget" in exits.enabled else None,
            decision.averaged_proposed_stop_loss,
            decision.averaged_proposed_profit_target,
        )

        after = self.bars.get_bars_after(signal.trade_date, entry_ts)
        exit_signal = evaluate_exit_strategies(
            self.exit_strategies,
            entry_price,
            entry_ts,
            after,
            direction,
            atr=atr,
            llm_stop_loss=decision.averaged_proposed_stop_loss,
            llm_profit_target=decision.averaged_proposed_profit_target,
        )
        if exit_signal is None:
            logger.warning("No bars after entry for %s on %s; candidate skipped", signal.ticker, signal.trade_date)
            return None

        trade_row = dict(row)
        trade_row.update(
            entry_time=entry_ts.strftime("%Y-%m-%d %H:%M:%S"),
            exit_time=to_market_time(exit_signal.timestamp).strftime("%Y-%m-%d %H:%M:%S"),
            entry_price=entry_price,
            exit_price=apply_slippage(exit_signal.price, is_long, exits.slippage, is_entry=False),
            execution_price_base=base_price,
            exit_reason=exit_signal.reason,
            chart_path=chart_path,
            entry_atr_value=atr,
            initial_stop_loss_price=stop.price,
            initial_profit_target_price=target.price,
            is_stop_loss_atr_based=stop.source == "atr" if stop.price is not None else None,
            is_stop_loss_llm_based=stop.source == "llm" if stop.price is not None else None,
            stop_loss_atr_multiplier_used=stop.multiplier_used,
            is_profit_target_atr_based=target.source == "atr" if target.price is not None else None,
            is_profit_target_llm_based=target.source == "llm" if target.price is not None else None,
            profit_target_atr_multiplier_used=target.multiplier_used,
        )

        levels = None
        if "trailingStop" in exits.enabled and exits.trailing_stop:
            levels = TrailingStopStrategy(exits.trailing_stop).levels(entry_price, is_long, atr)
        if levels is not None:
            opts = exits.trailing_stop
            # Trail distance is always stored in dollars at entry
            trail_dollars = levels.trail_amount if levels.is_atr_based else entry_price * levels.trail_pct
            trade_row.update(
                ts_activation_level=entry_price if levels.immediate else levels.activation_level,
                ts_trail_amount=trail_dollars,
                is_trailing_stop_atr_based=levels.is_atr_based,
                ts_activation_atr_multiplier_used=opts.activation_atr_multiplier if atr else None,
                ts_trail_atr_multiplier_used=opts.trail_atr_multiplier if levels.is_atr_based else None,
            )

        return map_raw_row_to_trade(trade_row, direction)

    def _write_result(self, chart_path: str, signal: EnrichedSignal, decision: ScreenDecision, trade):
        details = None
        if trade is not None:
            details = BacktestDetails(
                execution_price=trade.entry_price,
                atr_value=trade.entry_atr_value,
                stop_loss_price=trade.initial_stop_loss_price,
                profit_target_price=trade.initial_profit_target_price,
            )
        try:
            self.output_writer(chart_path, signal, decision, details)
        except OutputWriteError as exc:
            logger.error("Could not write LLM result for %s on %s: %s", signal.ticker, signal.trade_date, exc)

    def process_candidate(self, stats: TotalStats, row: Dict[str, Any]) -> TotalStats:
        """Screen one candidate and fold the outcome into `stats`."""
        cfg = self.config
        trade_date = str(row["trade_date"])[:10]
        year = to_int(row.get("year")) or int(trade_date[:4])
        entry_price = to_float(row.get("entry_price"))
        if entry_price is None:
            raise ValueError(f"Candidate on {trade_date} has no entry price")

        signal = EnrichedSignal(
            timestamp=to_market_time(row["entry_time"]),
            price=entry_price,
            type="entry",
            direction=row.get("direction") or cfg.entry_pattern.direction,
            ticker=cfg.ticker,
            trade_date=trade_date,
        )
        logger.debug("Processing candidate %s %s @ %.2f", cfg.ticker, row["entry_time"], entry_price)

        bars = self.bars.get_context_window(trade_date)
        daily_bars, metrics_text = self._market_context(signal, bars)
        chart_path = self._entry_chart(signal, bars, daily_bars)

        decision = run_entry_screen(
            self.screen,
            signal,
            chart_path,
            cfg.screen,
            cfg,
            context={"market_metrics_text": metrics_text, "bars": bars},
            debug=cfg.debug,
            market_metrics_text=metrics_text,
        )
        # Cost is spent whether or not the signal proceeds
        add_llm_cost(stats, decision.cost, year)

        trade = None
        if decision.proceed:
            direction = resolve_trade_direction(
                decision, cfg.direction, row.get("direction"), cfg.entry_pattern.direction
            )
            trade = self.build_trade(row, signal, decision, direction, chart_path)

        if trade is None:
            record_rejection(stats)
        else:
            record_trade(stats, trade)
            if cfg.charts.generate:
                try:
                    self.result_chart_renderer(
                        cfg.ticker,
                        cfg.pattern_name,
                        trade,
                        self.bars.get_day_bars(trade_date),
                        cfg.charts.output_dir,
                        width=cfg.charts.width,
                        height=cfg.charts.height,
                    )
                except ChartGenerationError as exc:
                    logger.warning("Result chart failed for %s on %s: %s", cfg.ticker, trade_date, exc)

        if cfg.screen.enabled and chart_path:
            self._write_result(chart_path, signal, decision, trade)
        return stats

    def run(self, rows: Optional[List[Dict[str, Any]]] = None) -> TotalStats:
        """
        Process every candidate in arrival order and finalize once.

        Args:
            rows: candidate rows; fetched with the analysis query when omitted

        Raises:
            QueryExecutionError: the candidate or trading-day query failed
        """
        if rows is None:
            rows = self.fetch_candidates()
            trading_days = self.fetch_trading_days()
        else:
            trading_days = {}
        for row in rows:
            year = to_int(row.get("year"))
            days = to_int(row.get("total_trading_days"))
            if year is not None and days is not None:
                trading_days.setdefault(year, days)

        stats = new_total_stats(len(rows), trading_days)
        logger.info("Found %d candidate(s) for %s (%s)", len(rows), self.config.ticker, self.config.pattern_name)

        for row in rows:
            try:
                stats = self.process_candidate(stats, row)
            except RECOVERABLE_ERRORS as exc:
                logger.error(
                    "Candidate %s on %s failed (%s): %s",
                    self.config.ticker, row.get("trade_date"), type(exc).__name__, exc,
                )
                record_rejection(stats)

        return finalize(stats)


def merge_cli_options(raw: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Copy explicitly given CLI flags over the loaded config dict."""
    simple = {
        "from": args.date_from,
        "to": args.date_to,
        "ticker": args.ticker,
        "timeframe": args.timeframe,
        "direction": args.direction,
        "entry_pattern": args.entry_pattern,
    }
    for key, value in simple.items():
        if value is not None:
            raw[key] = value

    charts = raw.setdefault("charts", {})
    if args.generate_charts:
        charts["generate"] = True
    if args.charts_dir:
        charts["output_dir"] = args.charts_dir

    if args.llm_screen is not None:
        raw.setdefault("llm_confirmation_screen", {})["enabled"] = args.llm_screen
    if args.debug:
        raw["debug"] = True
    return raw


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Backtest an intraday entry pattern with optional LLM chart confirmation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  # Backtest the configured pattern over a year
  python backtest.py --from 2023-01-01 --to 2023-12-31

  # Short quick-fall entries on QQQ, 5-minute bars
  python backtest.py --ticker QQQ --timeframe 5min --entry-pattern quick-fall --direction short

  # LLM screen with five calls
  python backtest.py --llm-screen --config-override llm_confirmation_screen.num_calls=5

Available entry patterns: {', '.join(available_patterns())}
        """,
    )
    parser.add_argument("--from", dest="date_from", default=None, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--to", dest="date_to", default=None, help="End date (YYYY-MM-DD)")
    parser.add_argument("--ticker", default=None, help="Ticker symbol (default from config.json)")
    parser.add_argument("--timeframe", choices=TIMEFRAMES, default=None, help="Bar timeframe")
    parser.add_argument("--direction", choices=DIRECTIONS, default=None, help="Trade direction")
    parser.add_argument("--entry-pattern", default=None, help="Entry pattern name")
    parser.add_argument(
        "--generate-charts", action="store_true", help="Write entry and result charts for every candidate"
    )
    parser.add_argument("--charts-dir", default=None, help="Chart output directory (default: charts)")
    parser.add_argument(
        "--llm-screen",
        dest="llm_screen",
        action="store_true",
        default=None,
        help="Enable the LLM confirmation screen",
    )
    parser.add_argument(
        "--no-llm-screen", dest="llm_screen", action="store_false", help="Disable the LLM confirmation screen"
    )
    parser.add_argument("--debug", action="store_true", help="Print queries and keep raw LLM responses")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--config", default=None, help="Path to config.json")
    add_config_override_argument(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    overall_t0 = time.perf_counter()

    try:
        raw = load_config(Path(args.config) if args.config else None)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    apply_config_overrides(raw, args.config_override or [], verbose=args.verbose)
    merge_cli_options(raw, args)

    result = parse_backtest_config(raw)
    if not result.ok:
        logger.error("Configuration error: %s", result.error)
        return 1
    config = result.unwrap()

    display_tz, _ = get_display_timezone(config.timezone)
    tz_label = get_timezone_label_for_date(display_tz, datetime.datetime.strptime(config.date_from, "%Y-%m-%d"))
    print(f"Backtesting {config.ticker} ({config.timeframe}) with pattern {config.pattern_name}")
    print(f"Date range: {config.date_from} to {config.date_to}")
    print(f"Times shown in {tz_label}")

    engine = BacktestEngine(config)
    try:
        stats = engine.run()
    except QueryExecutionError as exc:
        logger.error("Query failed: %s", exc)
        return 1

    print_report(stats, config, display_tz)

    elapsed_sec = time.perf_counter() - overall_t0
    elapsed_str = f"{elapsed_sec:.2f}s" if elapsed_sec < 120 else f"{elapsed_sec / 60.0:.2f}m"
    print(f"Runtime: {elapsed_str} for {config.ticker} ({config.date_from} -> {config.date_to})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
