import pytest

from trade_mapper import Trade
from trade_stats import (
    add_llm_cost,
    audit_counts,
    finalize,
    new_total_stats,
    record_rejection,
    record_trade,
    summarize_returns,
    trades_by_year,
)


def make_trade(return_pct, direction="long", year=2024, trade_date=None):
    entry = 100.0
    exit_price = entry * (1 + return_pct) if direction == "long" else entry * (1 - return_pct)
    return Trade(
        trade_date=trade_date or f"{year}-01-03",
        entry_time=f"{year}-01-03 09:35:00",
        exit_time=f"{year}-01-03 10:35:00",
        entry_price=entry,
        exit_price=exit_price,
        return_pct=return_pct,
        direction=direction,
        year=year,
        execution_price_base=entry,
    )


def test_summarize_returns_basic():
    summary = summarize_returns([0.02, -0.01, 0.03, 0.0])
    assert summary.trade_count == 4
    assert summary.winning_trades == 2
    assert summary.losing_trades == 2
    assert summary.win_rate == pytest.approx(0.5)
    assert summary.mean_return == pytest.approx(0.01)
    assert summary.median_return == pytest.approx(0.01)
    assert summary.min_return == pytest.approx(-0.01)
    assert summary.max_return == pytest.approx(0.03)


def test_summarize_returns_population_std_dev():
    # Population std-dev of [1, 3] is 1, sample std-dev would be ~1.414
    assert summarize_returns([0.01, 0.03]).std_dev_return == pytest.approx(0.01)


def test_summarize_returns_odd_median():
    assert summarize_returns([0.05, -0.02, 0.01]).median_return == pytest.approx(0.01)


def test_empty_direction_is_all_zero():
    summary = summarize_returns([])
    assert summary.trade_count == 0
    assert summary.win_rate == 0.0
    assert summary.mean_return == 0.0
    assert summary.median_return == 0.0
    assert summary.std_dev_return == 0.0
    assert summary.min_return is None


def test_record_trade_routes_by_direction():
    stats = new_total_stats(total_raw_matches=3)
    stats = record_trade(stats, make_trade(0.01, "long"))
    stats = record_trade(stats, make_trade(-0.02, "short"))
    stats = record_rejection(stats)

    assert len(stats.long_stats.trades) == 1
    assert stats.long_stats.winning_trades == 1
    assert len(stats.short_stats.trades) == 1
    assert stats.short_stats.losing_trades == 1
    assert stats.short_stats.total_return_sum == pytest.approx(-0.02)
    assert [t.direction for t in stats.trade_log] == ["long", "short"]
    assert audit_counts(stats)


def test_record_trade_rejects_unknown_direction():
    trade = make_trade(0.01)
    trade.direction = "sideways"
    with pytest.raises(ValueError):
        record_trade(new_total_stats(), trade)


def test_finalize_is_idempotent():
    stats = new_total_stats(total_raw_matches=2)
    record_trade(stats, make_trade(0.01, "long"))
    record_trade(stats, make_trade(0.02, "short"))

    first = finalize(stats)
    snapshot = (first.total_llm_confirmed_trades, first.long_stats.summary, first.short_stats.summary)
    second = finalize(first)

    assert second.total_llm_confirmed_trades == 2
    assert second.total_llm_confirmed_trades == len(second.long_stats.trades) + len(second.short_stats.trades)
    assert (second.total_llm_confirmed_trades, second.long_stats.summary, second.short_stats.summary) == snapshot


def test_finalize_win_rate_in_unit_interval():
    stats = new_total_stats()
    for r in (0.01, -0.01, 0.02):
        record_trade(stats, make_trade(r))
    finalize(stats)
    assert 0.0 <= stats.long_stats.summary.win_rate <= 1.0
    assert stats.long_stats.summary.win_rate == pytest.approx(2 / 3)
    assert stats.short_stats.summary.win_rate == 0.0


def test_llm_cost_never_decreases():
    stats = new_total_stats()
    seen = []
    for cost, year in ((0.004, 2023), (0.0, 2023), (0.009, 2024)):
        add_llm_cost(stats, cost, year)
        seen.append(stats.grand_total_llm_cost)
    assert seen == sorted(seen)
    assert stats.grand_total_llm_cost == pytest.approx(0.013)
    assert stats.llm_cost_by_year == {2023: pytest.approx(0.004), 2024: pytest.approx(0.009)}

    with pytest.raises(ValueError):
        add_llm_cost(stats, -0.001)


def test_trading_days_are_summed():
    stats = new_total_stats(5, {2024: 252, 2023: 250})
    assert stats.total_trading_days == 502
    assert list(stats.trading_days_by_year) == [2023, 2024]


def test_trades_by_year_keeps_arrival_order():
    trades = [
        make_trade(0.01, year=2023, trade_date="2023-05-01"),
        make_trade(0.02, year=2024, trade_date="2024-02-01"),
        make_trade(0.03, year=2023, trade_date="2023-03-01"),
    ]
    grouped = trades_by_year(trades)
    assert list(grouped) == [2023, 2024]
    assert [t.trade_date for t in grouped[2023]] == ["2023-05-01", "2023-03-01"]
