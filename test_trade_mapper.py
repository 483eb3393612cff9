import pytest

from trade_mapper import TRADE_FIELDS, Trade, calculate_return_pct, map_raw_row_to_trade, to_bool, to_float, to_int


@pytest.fixture
def raw_row():
    """Row as the query layer hands it over: numbers partly as strings."""
    return {
        "trade_date": "2024-01-03",
        "year": "2024",
        "market_open": "226.10",
        "entry_time": "2024-01-03 09:35:00",
        "exit_time": "2024-01-03 10:35:00",
        "entry_price": "226.38",
        "exit_price": 226.46,
        "rise_pct": "0.0031",
        "direction": "long",
        "total_trading_days": "252",
        "exit_reason": "maxHoldTime",
        "unrelated_column": "ignored",
    }


def test_long_winning_return():
    assert calculate_return_pct(226.38, 226.46, "long") == pytest.approx(0.00035, abs=1e-5)


def test_short_losing_return_when_price_rises():
    ret = calculate_return_pct(225.73, 225.98, "short")
    assert ret == pytest.approx(-0.00111, abs=1e-5)
    assert ret < 0


def test_zero_entry_price_rejected():
    with pytest.raises(ValueError):
        calculate_return_pct(0.0, 1.0, "long")


def test_map_row_coerces_types(raw_row):
    trade = map_raw_row_to_trade(raw_row, "long")
    assert isinstance(trade, Trade)
    assert trade.entry_price == pytest.approx(226.38)
    assert trade.year == 2024
    assert trade.total_trading_days == 252
    assert trade.rise_pct == pytest.approx(0.0031)
    assert trade.market_open == pytest.approx(226.10)
    assert trade.exit_reason == "maxHoldTime"
    assert trade.is_win


def test_map_row_defaults_execution_base_to_entry(raw_row):
    trade = map_raw_row_to_trade(raw_row, "long")
    assert trade.execution_price_base == trade.entry_price

    raw_row["execution_price_base"] = "226.30"
    assert map_raw_row_to_trade(raw_row, "long").execution_price_base == pytest.approx(226.30)


def test_short_mapping_flips_sign(raw_row):
    raw_row.update(entry_price=225.73, exit_price=225.98)
    trade = map_raw_row_to_trade(raw_row, "short")
    assert trade.direction == "short"
    assert trade.return_pct == pytest.approx(-0.00111, abs=1e-5)
    assert not trade.is_win


def test_year_falls_back_to_trade_date(raw_row):
    del raw_row["year"]
    assert map_raw_row_to_trade(raw_row, "long").year == 2024


def test_optional_risk_fields(raw_row):
    raw_row.update(
        entry_atr_value="0.42",
        initial_stop_loss_price=225.5,
        is_stop_loss_atr_based="true",
        stop_loss_atr_multiplier_used="2.0",
        is_profit_target_llm_based=0,
    )
    trade = map_raw_row_to_trade(raw_row, "long")
    assert trade.entry_atr_value == pytest.approx(0.42)
    assert trade.initial_stop_loss_price == pytest.approx(225.5)
    assert trade.is_stop_loss_atr_based is True
    assert trade.stop_loss_atr_multiplier_used == pytest.approx(2.0)
    assert trade.is_profit_target_llm_based is False
    assert trade.initial_profit_target_price is None


def test_unknown_columns_are_dropped(raw_row):
    trade = map_raw_row_to_trade(raw_row, "long")
    assert "unrelated_column" not in TRADE_FIELDS
    assert not hasattr(trade, "unrelated_column")


@pytest.mark.parametrize("missing", ["entry_price", "exit_price"])
def test_missing_prices_raise(raw_row, missing):
    raw_row[missing] = ""
    with pytest.raises(ValueError):
        map_raw_row_to_trade(raw_row, "long")


def test_bad_direction_raises(raw_row):
    with pytest.raises(ValueError):
        map_raw_row_to_trade(raw_row, "llm_decides")


@pytest.mark.parametrize(
    "value,expected",
    [("1.5", 1.5), (2, 2.0), ("", None), (None, None), ("abc", None), (float("nan"), None), (True, None)],
)
def test_to_float(value, expected):
    assert to_float(value) == expected


def test_to_int_and_to_bool():
    assert to_int("252.0") == 252
    assert to_int(None) is None
    assert to_bool("yes") is True
    assert to_bool("0") is False
    assert to_bool("maybe") is None
