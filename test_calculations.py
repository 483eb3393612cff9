import pandas as pd
import pytest

from calculations import (
    average_true_range_for_day,
    calculate_portfolio_growth,
    format_dollar,
    format_percent,
    mean_return,
    median_return,
    std_dev_return,
    trade_percentage,
    true_range,
    win_rate,
)


def bars_from(rows):
    return pd.DataFrame(rows, columns=["High", "Low", "Close"])


def test_true_range_uses_previous_close():
    assert true_range(10.0, 9.0) == pytest.approx(1.0)
    # Gap up: high - prev close dominates
    assert true_range(12.0, 11.5, prev_close=10.0) == pytest.approx(2.0)
    # Gap down: prev close - low dominates
    assert true_range(9.0, 8.0, prev_close=10.0) == pytest.approx(2.0)


def test_average_true_range_for_day():
    bars = bars_from([(11.0, 10.0, 10.5), (11.5, 10.5, 11.0)])
    assert average_true_range_for_day(bars) == pytest.approx(1.0)
    assert average_true_range_for_day(bars_from([])) is None


def test_return_statistics():
    returns = [0.01, -0.02, 0.03, 0.04]
    assert mean_return(returns) == pytest.approx(0.015)
    assert median_return(returns) == pytest.approx(0.02)
    # population std-dev
    assert std_dev_return([0.01, 0.03]) == pytest.approx(0.01)


def test_empty_statistics_are_zero():
    assert mean_return([]) == 0.0
    assert median_return([]) == 0.0
    assert std_dev_return([]) == 0.0
    assert win_rate(0, 0) == 0.0


def test_win_rate_is_a_fraction():
    assert win_rate(3, 4) == pytest.approx(0.75)


def test_portfolio_growth_compounds():
    growth = calculate_portfolio_growth([0.10, -0.10])
    assert growth["final_capital"] == pytest.approx(9900.0)
    assert growth["total_dollar_return"] == pytest.approx(-100.0)
    assert growth["percentage_growth"] == pytest.approx(-1.0)
    assert calculate_portfolio_growth([])["final_capital"] == 10000


def test_formatting():
    assert format_dollar(226.386) == "$226.39"
    assert format_percent(0.0123) == "1.23%"
    assert format_percent(-0.005) == "-0.50%"
    assert trade_percentage(5, 250) == "2.0"
    assert trade_percentage(5, 0) == "0.0"
