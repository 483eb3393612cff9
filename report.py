"""
Console report for a backtest run.

Every section is built as a string by a format_* function and printed by
print_report(); tests assert on the strings.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from calculations import calculate_portfolio_growth, format_dollar, format_percent, trade_percentage
from time_utils import format_display_time
from trade_mapper import Trade
from trade_stats import TotalStats, summarize_returns, trades_by_year

RULE = "=" * 60
THIN_RULE = "-" * 60
DEFAULT_TRADING_DAYS = 252


def describe_exit_strategies(exit_config) -> str:
    if exit_config is None or not exit_config.enabled:
        return "Default (End of Day)"
    details: List[str] = []
    for name in exit_config.enabled:
        if name == "stopLoss" and exit_config.stop_loss:
            opts = exit_config.stop_loss
            kind = "LLM" if opts.use_llm_proposed_price else "ATR" if opts.atr_multiplier else "Percent"
            details.append(f"Stop Loss ({kind})")
        elif name == "profitTarget" and exit_config.profit_target:
            opts = exit_config.profit_target
            kind = "LLM" if opts.use_llm_proposed_price else "ATR" if opts.atr_multiplier else "Percent"
            details.append(f"Profit Target ({kind})")
        elif name == "trailingStop":
            details.append("Trailing Stop")
        elif name == "maxHoldTime":
            details.append(f"Max Hold Time ({exit_config.max_hold_minutes} min)")
        elif name == "endOfDay":
            details.append(f"End of Day ({exit_config.end_of_day_time})")
    return ", ".join(details) if details else "Default (End of Day)"


def format_header(config) -> str:
    lines = [
        "",
        f"{config.ticker} Analysis ({config.date_from} to {config.date_to}):",
        f"Entry Pattern: {config.entry_pattern.describe()}",
        f"Direction: {config.direction}",
        f"Exit Strategies: {describe_exit_strategies(config.exit_strategies)}",
    ]
    screen = config.screen
    if screen is not None and screen.enabled:
        temps = ", ".join(str(t) for t in screen.temperatures)
        lines.append(f"LLM Provider: {screen.llm_provider} | Model: {screen.model_name}")
        lines.append(
            f"LLM Analysis: {screen.num_calls} calls, temps [{temps}], threshold {screen.agreement_threshold}"
        )
    lines.append(RULE)
    return "\n".join(lines)


def format_year_header(year: int) -> str:
    return f"\n{year} Trades:"


def _level_text(label: str, price: Optional[float], entry: float) -> str:
    offset = price - entry
    sign = "-" if offset < 0 else "+"
    return f"{label}: {format_dollar(price)} ({sign}{format_dollar(abs(offset))}, {format_percent(offset / entry)})"


def _atr_label(label: str, multiplier: Optional[float]) -> str:
    return f"{label} [{multiplier:.1f}x]" if multiplier is not None else label


def format_trade_details(trade: Trade, tzinfo=None) -> str:
    arrow = "DOWN" if trade.direction == "short" else "UP"
    entry_time = format_display_time(trade.entry_time, tzinfo) if trade.entry_time else "--:--"
    exit_time = format_display_time(trade.exit_time, tzinfo) if trade.exit_time else "--:--"
    parts = [
        f"  [{arrow}] {trade.trade_date} {entry_time} -> {exit_time}",
        f"Entry: {format_dollar(trade.execution_price_base)}",
        f"Adj Entry: {format_dollar(trade.entry_price)}",
        f"Adj Exit: {format_dollar(trade.exit_price)}",
    ]
    if trade.rise_pct is not None:
        change = -trade.rise_pct if trade.direction == "short" else trade.rise_pct
        parts.append(f"Change: {format_percent(change)}")
    parts.append(f"{'WIN' if trade.is_win else 'LOSS'} {format_percent(trade.return_pct)}")
    if trade.exit_reason:
        parts.append(f"[{trade.exit_reason}]")

    levels: List[str] = []
    if trade.entry_atr_value is not None:
        levels.append(f"ATR: {format_dollar(trade.entry_atr_value)}")
    if trade.initial_stop_loss_price is not None:
        label = "SL"
        if trade.is_stop_loss_llm_based:
            label = "LLM SL"
        elif trade.is_stop_loss_atr_based:
            label = _atr_label("ATR SL", trade.stop_loss_atr_multiplier_used)
        levels.append(_level_text(label, trade.initial_stop_loss_price, trade.entry_price))
    if trade.initial_profit_target_price is not None:
        label = "PT"
        if trade.is_profit_target_llm_based:
            label = "LLM PT"
        elif trade.is_profit_target_atr_based:
            label = _atr_label("ATR PT", trade.profit_target_atr_multiplier_used)
        levels.append(_level_text(label, trade.initial_profit_target_price, trade.entry_price))
    if trade.ts_activation_level is not None:
        if trade.ts_activation_level == trade.entry_price:
            levels.append("TS Act: Immediate")
        else:
            levels.append(_level_text("TS Act", trade.ts_activation_level, trade.entry_price))
    if trade.ts_trail_amount is not None:
        label = "TS Trail"
        if trade.is_trailing_stop_atr_based:
            label = _atr_label("ATR TS Trail", trade.ts_trail_atr_multiplier_used)
        levels.append(f"{label}: {format_dollar(trade.ts_trail_amount)}")
    if levels:
        parts.append("; ".join(levels))
    return " ".join(parts)


def format_directional_summary(title: str, trades: Sequence[Trade], trading_days: int) -> Optional[str]:
    """One summary line, or None when there are no trades."""
    if not trades:
        return None
    summary = summarize_returns(t.return_pct for t in trades)
    return (
        f"{title}: {summary.trade_count} trades ({trade_percentage(summary.trade_count, trading_days)}% of days) | "
        f"Return Range: {format_percent(summary.min_return)} to {format_percent(summary.max_return)} | "
        f"Mean: {format_percent(summary.mean_return)} | Median: {format_percent(summary.median_return)} | "
        f"StdDev: {format_percent(summary.std_dev_return)} | Win Rate: {summary.win_rate * 100:.1f}%"
    )


def format_growth(trades: Sequence[Trade]) -> str:
    growth = calculate_portfolio_growth([t.return_pct for t in trades])
    return (
        f"Compounded Growth ($10k Start): {format_dollar(growth['final_capital'])} "
        f"({growth['percentage_growth']:.2f}%)"
    )


def format_year_summary(
    year: int, trades: Sequence[Trade], trading_days: Optional[int], llm_cost: Optional[float] = None
) -> str:
    days = trading_days or DEFAULT_TRADING_DAYS
    longs = [t for t in trades if t.direction == "long"]
    shorts = [t for t in trades if t.direction == "short"]
    lines = [""]
    for title, bucket in ((f"{year} Long Trades", longs), (f"{year} Short Trades", shorts)):
        line = format_directional_summary(title, bucket, days)
        if line:
            lines.append(line)
    if trades:
        lines.append(format_directional_summary(f"{year} Combined", trades, days))
        lines.append(format_growth(trades))
    if llm_cost is not None and llm_cost > 0:
        lines.append(f"{year} LLM Cost: ${llm_cost:.4f}")
    return "\n".join(lines)


def format_overall_summary(stats: TotalStats) -> str:
    days = stats.total_trading_days or DEFAULT_TRADING_DAYS
    lines = ["", THIN_RULE, "OVERALL:"]
    lines.append(
        f"  Initial signals (pre-LLM): {stats.total_raw_matches} "
        f"({trade_percentage(stats.total_raw_matches, days)}% of trading days)"
    )
    rate = (
        stats.total_llm_confirmed_trades / stats.total_raw_matches * 100 if stats.total_raw_matches else 0.0
    )
    lines.append(f"  LLM Confirmed Trades: {stats.total_llm_confirmed_trades} ({rate:.1f}% of initial signals)")
    lines.append(f"  Rejected by screen: {stats.rejected_count}")
    for title, bucket in (("Long Trades", stats.long_stats), ("Short Trades", stats.short_stats)):
        line = format_directional_summary(title, bucket.trades, days)
        if line:
            lines.append(f"  {line}")
    if stats.trade_log:
        lines.append(f"  {format_directional_summary('Combined', stats.trade_log, days)}")
        lines.append(f"  {format_growth(stats.trade_log)}")
    lines.append(f"  Total LLM Cost: ${stats.grand_total_llm_cost:.4f}")
    lines.append(RULE)
    return "\n".join(lines)


def format_report(stats: TotalStats, config, tzinfo=None) -> str:
    sections = [format_header(config)]
    for year, trades in trades_by_year(stats.trade_log).items():
        sections.append(format_year_header(year))
        sections.extend(format_trade_details(t, tzinfo) for t in trades)
        sections.append(
            format_year_summary(
                year,
                trades,
                stats.trading_days_by_year.get(year) or trades[0].total_trading_days,
                stats.llm_cost_by_year.get(year),
            )
        )
    if not stats.trade_log:
        sections.append("\nNo trades.")
    sections.append(format_overall_summary(stats))
    return "\n".join(sections)


def print_report(stats: TotalStats, config, tzinfo=None):
    print(format_report(stats, config, tzinfo))
