import pandas as pd
import pytest

from config_utils import ExitStrategiesConfig, PriceLevelOptions, SlippageOptions, TrailingStopOptions
from exit_strategies import (
    EndOfDayStrategy,
    MaxHoldTimeStrategy,
    ProfitTargetStrategy,
    StopLossStrategy,
    TrailingStopStrategy,
    apply_slippage,
    bars_after,
    calculate_exit_price,
    calculate_exit_prices,
    create_exit_strategies,
    evaluate_exit_strategies,
)

TZ = "America/New_York"


def ts(hhmm, day="2024-01-03"):
    return pd.Timestamp(f"{day} {hhmm}", tz=TZ)


@pytest.fixture
def flat_bars():
    """One hour of flat one-minute bars around 100 (09:30-10:29)."""
    times = pd.date_range("2024-01-03 09:30", periods=60, freq="1min", tz=TZ)
    return pd.DataFrame(
        {
            "Datetime": times,
            "Open": 100.0,
            "High": 100.05,
            "Low": 99.95,
            "Close": 100.0,
            "Volume": 1000,
        }
    )


def set_bar(df, hhmm, **values):
    mask = df["Datetime"] == ts(hhmm)
    for column, value in values.items():
        df.loc[mask, column.capitalize()] = value
    return df


ENTRY = ts("09:35")


# ---------------------------------------------------------------------------
# Level placement
# ---------------------------------------------------------------------------


def test_llm_price_has_priority():
    opts = PriceLevelOptions(percent_from_entry=1.0, atr_multiplier=2.0, use_llm_proposed_price=True)
    level = calculate_exit_price(100.0, opts, True, atr=0.5, llm_proposed_price=95.0)
    assert level.price == 95.0
    assert level.source == "llm"


def test_atr_used_when_no_llm_price():
    opts = PriceLevelOptions(percent_from_entry=1.0, atr_multiplier=2.0, use_llm_proposed_price=True)
    stop = calculate_exit_price(100.0, opts, True, atr=0.5, llm_proposed_price=None, is_stop_loss=True)
    target = calculate_exit_price(100.0, opts, True, atr=0.5, is_stop_loss=False)
    assert stop.price == pytest.approx(99.0)
    assert stop.source == "atr"
    assert stop.multiplier_used == 2.0
    assert target.price == pytest.approx(101.0)


@pytest.mark.parametrize(
    "is_long,is_stop,expected",
    [
        (True, True, 99.0),
        (True, False, 101.0),
        (False, True, 101.0),
        (False, False, 99.0),
    ],
)
def test_percent_levels_sit_on_the_right_side(is_long, is_stop, expected):
    opts = PriceLevelOptions(percent_from_entry=1.0)
    level = calculate_exit_price(100.0, opts, is_long, atr=None, is_stop_loss=is_stop)
    assert level.price == pytest.approx(expected)
    assert level.source == "percentage"


def test_calculate_exit_prices_without_options_is_empty():
    stop, target = calculate_exit_prices(100.0, 0.5, True)
    assert stop.price is None and target.price is None


@pytest.mark.parametrize(
    "slippage,is_long,is_entry,expected",
    [
        (SlippageOptions("percent", 0.05), True, True, 100.05),
        (SlippageOptions("percent", 0.05), True, False, 99.95),
        (SlippageOptions("percent", 0.05), False, True, 99.95),
        (SlippageOptions("fixed", 0.02), False, False, 100.02),
        (None, True, True, 100.0),
    ],
)
def test_slippage_is_always_adverse(slippage, is_long, is_entry, expected):
    assert apply_slippage(100.0, is_long, slippage, is_entry) == pytest.approx(expected)


def test_bars_after_excludes_entry_and_extended_hours(flat_bars):
    premarket = pd.DataFrame(
        [{"Datetime": ts("09:00"), "Open": 1, "High": 1, "Low": 1, "Close": 1, "Volume": 1}]
    )
    bars = pd.concat([premarket, flat_bars], ignore_index=True)
    after = bars_after(bars, ENTRY)
    assert after["Datetime"].iloc[0] == ts("09:36")
    assert len(after) == 54


# ---------------------------------------------------------------------------
# Individual strategies
# ---------------------------------------------------------------------------


def test_stop_loss_fills_at_next_open(flat_bars):
    set_bar(flat_bars, "09:40", low=98.9)
    set_bar(flat_bars, "09:41", open=98.8)
    exit_signal = StopLossStrategy(PriceLevelOptions(percent_from_entry=1.0)).evaluate(
        100.0, ENTRY, flat_bars, True
    )
    assert exit_signal.timestamp == ts("09:41")
    assert exit_signal.price == pytest.approx(98.8)
    assert exit_signal.reason == "stopLoss"


def test_short_stop_loss_watches_highs(flat_bars):
    set_bar(flat_bars, "09:45", high=101.2)
    exit_signal = StopLossStrategy(PriceLevelOptions(percent_from_entry=1.0)).evaluate(
        100.0, ENTRY, flat_bars, False
    )
    assert exit_signal.timestamp == ts("09:46")


def test_profit_target_on_last_bar_fills_at_close(flat_bars):
    set_bar(flat_bars, "10:29", high=102.5, close=102.2)
    exit_signal = ProfitTargetStrategy(PriceLevelOptions(percent_from_entry=2.0)).evaluate(
        100.0, ENTRY, flat_bars, True
    )
    assert exit_signal.timestamp == ts("10:29")
    assert exit_signal.price == pytest.approx(102.2)


def test_trailing_stop_activates_then_trails(flat_bars):
    set_bar(flat_bars, "09:40", open=100.8, high=101.0, low=100.6, close=100.8)
    strategy = TrailingStopStrategy(TrailingStopOptions(activation_percent=0.5, trail_percent=0.5))
    levels = strategy.levels(100.0, True)
    assert levels.activation_level == pytest.approx(100.5)
    assert not levels.immediate

    exit_signal = strategy.evaluate(100.0, ENTRY, flat_bars, True)
    # 101.00 * 0.995 = 100.495, first broken by the 09:41 low
    assert exit_signal.timestamp == ts("09:42")
    assert exit_signal.reason == "trailingStop"


def test_trailing_stop_never_activated(flat_bars):
    strategy = TrailingStopStrategy(TrailingStopOptions(activation_percent=0.5, trail_percent=0.5))
    assert strategy.evaluate(100.0, ENTRY, flat_bars, True) is None


def test_trailing_stop_atr_trail_amount():
    strategy = TrailingStopStrategy(TrailingStopOptions(activation_atr_multiplier=0, trail_atr_multiplier=1.5))
    levels = strategy.levels(100.0, True, atr=0.4)
    assert levels.immediate
    assert levels.trail_amount == pytest.approx(0.6)
    assert levels.is_atr_based


def test_trailing_stop_atr_only_without_atr_is_skipped(flat_bars):
    strategy = TrailingStopStrategy(TrailingStopOptions(trail_atr_multiplier=1.5))
    assert strategy.levels(100.0, True, atr=None) is None
    assert strategy.evaluate(100.0, ENTRY, flat_bars, True, atr=None) is None


def test_max_hold_time(flat_bars):
    exit_signal = MaxHoldTimeStrategy(30).evaluate(100.0, ENTRY, flat_bars, True)
    assert exit_signal.timestamp == ts("10:05")
    assert exit_signal.reason == "maxHoldTime"


def test_max_hold_time_past_session_end(flat_bars):
    assert MaxHoldTimeStrategy(120).evaluate(100.0, ENTRY, flat_bars, True) is None


def test_end_of_day_at_configured_time(flat_bars):
    exit_signal = EndOfDayStrategy("10:00").evaluate(100.0, ENTRY, flat_bars, True)
    assert exit_signal.timestamp == ts("10:00")


def test_end_of_day_uses_last_bar_when_data_ends_early(flat_bars):
    exit_signal = EndOfDayStrategy("16:00").evaluate(100.0, ENTRY, flat_bars, True)
    assert exit_signal.timestamp == ts("10:29")


# ---------------------------------------------------------------------------
# Combined evaluation
# ---------------------------------------------------------------------------


def test_create_exit_strategies_order():
    config = ExitStrategiesConfig(
        enabled=["profitTarget", "stopLoss"],
        stop_loss=PriceLevelOptions(percent_from_entry=1.0),
        profit_target=PriceLevelOptions(percent_from_entry=2.0),
        max_hold_minutes=30,
        end_of_day_time="15:55",
    )
    names = [s.name for s in create_exit_strategies(config)]
    assert names == ["profitTarget", "stopLoss", "maxHoldTime", "endOfDay"]


def test_earliest_exit_wins(flat_bars):
    set_bar(flat_bars, "09:50", low=98.9)
    strategies = [StopLossStrategy(PriceLevelOptions(percent_from_entry=1.0)), MaxHoldTimeStrategy(10)]
    exit_signal = evaluate_exit_strategies(strategies, 100.0, ENTRY, flat_bars, "long")
    assert exit_signal.reason == "maxHoldTime"
    assert exit_signal.timestamp == ts("09:45")


def test_same_bar_tie_goes_to_list_order(flat_bars):
    set_bar(flat_bars, "09:50", low=98.9)
    strategies = [StopLossStrategy(PriceLevelOptions(percent_from_entry=1.0)), MaxHoldTimeStrategy(16)]
    exit_signal = evaluate_exit_strategies(strategies, 100.0, ENTRY, flat_bars, "long")
    assert exit_signal.timestamp == ts("09:51")
    assert exit_signal.reason == "stopLoss"


def test_llm_stop_override(flat_bars):
    set_bar(flat_bars, "09:40", low=99.4)
    strategies = [StopLossStrategy(PriceLevelOptions(percent_from_entry=1.0, use_llm_proposed_price=True))]
    exit_signal = evaluate_exit_strategies(strategies, 100.0, ENTRY, flat_bars, "long", llm_stop_loss=99.5)
    assert exit_signal.reason == "stopLoss"
    assert exit_signal.timestamp == ts("09:41")


def test_fallback_to_last_bar(flat_bars):
    set_bar(flat_bars, "10:29", close=100.4)
    strategies = [ProfitTargetStrategy(PriceLevelOptions(percent_from_entry=5.0))]
    exit_signal = evaluate_exit_strategies(strategies, 100.0, ENTRY, flat_bars, "long")
    assert exit_signal.reason == "endOfDay"
    assert exit_signal.timestamp == ts("10:29")
    assert exit_signal.price == pytest.approx(100.4)


def test_no_bars_after_entry(flat_bars):
    assert evaluate_exit_strategies([MaxHoldTimeStrategy(5)], 100.0, ts("10:29"), flat_bars, "long") is None
