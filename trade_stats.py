"""
Per-direction trade statistics and the run-level aggregate.

TotalStats is created once per run, threaded through the orchestrator, and
finalized once at the end. Every mutator returns the aggregate it was given so
call sites read as `stats = record_trade(stats, trade)`.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from calculations import mean_return, median_return, std_dev_return, win_rate
from trade_mapper import Trade


@dataclass
class DirectionSummary:
    trade_count: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    mean_return: float = 0.0
    median_return: float = 0.0
    std_dev_return: float = 0.0
    min_return: Optional[float] = None
    max_return: Optional[float] = None


@dataclass
class DirectionStats:
    direction: str
    trades: List[Trade] = field(default_factory=list)
    winning_trades: int = 0
    total_return_sum: float = 0.0
    all_returns: List[float] = field(default_factory=list)
    summary: DirectionSummary = field(default_factory=DirectionSummary)

    @property
    def losing_trades(self) -> int:
        return len(self.trades) - self.winning_trades


@dataclass
class TotalStats:
    long_stats: DirectionStats = field(default_factory=lambda: DirectionStats("long"))
    short_stats: DirectionStats = field(default_factory=lambda: DirectionStats("short"))
    total_trading_days: int = 0
    total_raw_matches: int = 0
    grand_total_llm_cost: float = 0.0
    rejected_count: int = 0
    total_llm_confirmed_trades: int = 0
    llm_cost_by_year: Dict[int, float] = field(default_factory=OrderedDict)
    trading_days_by_year: Dict[int, int] = field(default_factory=OrderedDict)
    # Confirmed trades of both directions in processing order
    trade_log: List[Trade] = field(default_factory=list)
    finalized: bool = False

    def for_direction(self, direction: str) -> DirectionStats:
        if direction == "long":
            return self.long_stats
        if direction == "short":
            return self.short_stats
        raise ValueError(f"Unknown trade direction {direction!r}")


def new_total_stats(
    total_raw_matches: int = 0,
    trading_days_by_year: Optional[Dict[int, int]] = None,
) -> TotalStats:
    days = OrderedDict(sorted((trading_days_by_year or {}).items()))
    return TotalStats(
        total_raw_matches=total_raw_matches,
        trading_days_by_year=days,
        total_trading_days=sum(days.values()),
    )


def summarize_returns(returns: Iterable[float]) -> DirectionSummary:
    """Win rate, mean, median and population std-dev of a list of returns (zeros when empty)."""
    values = [float(r) for r in returns]
    count = len(values)
    winners = sum(1 for r in values if r > 0)
    return DirectionSummary(
        trade_count=count,
        winning_trades=winners,
        losing_trades=count - winners,
        win_rate=win_rate(winners, count),
        mean_return=mean_return(values),
        median_return=median_return(values),
        std_dev_return=std_dev_return(values),
        min_return=min(values) if values else None,
        max_return=max(values) if values else None,
    )


def record_trade(stats: TotalStats, trade: Trade) -> TotalStats:
    bucket = stats.for_direction(trade.direction)
    bucket.trades.append(trade)
    if trade.return_pct > 0:
        bucket.winning_trades += 1
    bucket.total_return_sum += trade.return_pct
    bucket.all_returns.append(trade.return_pct)
    stats.trade_log.append(trade)
    stats.finalized = False
    return stats


def record_rejection(stats: TotalStats) -> TotalStats:
    stats.rejected_count += 1
    return stats


def add_llm_cost(stats: TotalStats, cost: float, year: Optional[int] = None) -> TotalStats:
    """Accumulate a screening's cost; negative costs are refused so the total never decreases."""
    if cost < 0:
        raise ValueError(f"LLM cost must be >= 0, got {cost}")
    stats.grand_total_llm_cost += cost
    if year is not None:
        stats.llm_cost_by_year[year] = stats.llm_cost_by_year.get(year, 0.0) + cost
    return stats


def finalize(stats: TotalStats) -> TotalStats:
    """Derive summary fields. Safe to call again; it only recomputes from the accumulated state."""
    for bucket in (stats.long_stats, stats.short_stats):
        bucket.summary = summarize_returns(bucket.all_returns)
    stats.total_llm_confirmed_trades = len(stats.long_stats.trades) + len(stats.short_stats.trades)
    stats.finalized = True
    return stats


def audit_counts(stats: TotalStats) -> bool:
    """Every raw match is either a recorded trade or an explicit rejection."""
    confirmed = len(stats.long_stats.trades) + len(stats.short_stats.trades)
    return confirmed + stats.rejected_count == stats.total_raw_matches


def trades_by_year(trades: Iterable[Trade]) -> Dict[int, List[Trade]]:
    """Group trades by year, keeping arrival order inside each year."""
    grouped: Dict[int, List[Trade]] = OrderedDict()
    for trade in trades:
        grouped.setdefault(trade.year, []).append(trade)
    return grouped
