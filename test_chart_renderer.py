import os

import pandas as pd
import pytest

import chart_renderer
from chart_renderer import chart_path_for, cumulative_vwap, generate_entry_chart, generate_result_chart
from errors import ChartGenerationError
from patterns import Signal
from trade_mapper import Trade

TZ = "America/New_York"


def day_bars(day, periods=30, price=100.0):
    times = pd.date_range(f"{day} 09:30", periods=periods, freq="1min", tz=TZ)
    return pd.DataFrame(
        {
            "Datetime": times,
            "Open": price,
            "High": price + 0.2,
            "Low": price - 0.2,
            "Close": price + 0.1,
            "Volume": 1000,
        }
    )


@pytest.fixture
def written(monkeypatch):
    """Capture figures instead of invoking kaleido."""
    calls = []

    def write_image(fig, path, width=None, height=None):
        calls.append({"fig": fig, "path": path, "width": width, "height": height})

    monkeypatch.setattr(chart_renderer.pio, "write_image", write_image)
    return calls


@pytest.fixture
def bars():
    return pd.concat([day_bars("2024-01-02", price=99.0), day_bars("2024-01-03")], ignore_index=True)


def test_chart_path_layout():
    assert chart_path_for("charts", "quick-rise", "SPY", "2024-01-03") == os.path.join(
        "charts", "quick-rise", "SPY_quick-rise_20240103_masked.png"
    )
    assert chart_path_for("out", "quick-fall", "QQQ", "2024-02-05", "complete").endswith(
        "QQQ_quick-fall_20240205_complete.png"
    )


def test_cumulative_vwap_ignores_zero_volume():
    df = pd.DataFrame({"High": [11.0, 21.0], "Low": [9.0, 19.0], "Close": [10.0, 20.0], "Volume": [100, 0]})
    vwap = cumulative_vwap(df)
    assert vwap.iloc[0] == pytest.approx(10.0)
    assert vwap.iloc[1] == pytest.approx(10.0)


def test_entry_chart_hides_bars_after_signal(written, bars, tmp_path):
    signal = Signal(timestamp=pd.Timestamp("2024-01-03 09:40", tz=TZ), price=100.1, direction="long")
    path = generate_entry_chart("SPY", "quick-rise", signal, bars, str(tmp_path), suppress_sma=True)

    assert path == chart_path_for(str(tmp_path), "quick-rise", "SPY", "2024-01-03")
    assert os.path.isdir(tmp_path / "quick-rise")
    fig = written[0]["fig"]
    candles = fig.data[0]
    # 30 prior-day bars plus 09:30..09:40 inclusive
    assert len(candles.x) == 41
    assert [trace.name for trace in fig.data] == ["Price", "Volume", "VWAP"]


def test_entry_chart_can_suppress_vwap(written, bars, tmp_path):
    signal = Signal(timestamp=pd.Timestamp("2024-01-03 09:40", tz=TZ), price=100.1)
    generate_entry_chart("SPY", "quick-rise", signal, bars, str(tmp_path), suppress_sma=True, suppress_vwap=True)
    assert [trace.name for trace in written[0]["fig"].data] == ["Price", "Volume"]


def test_entry_chart_without_bars_fails(written, tmp_path):
    signal = Signal(timestamp=pd.Timestamp("2024-01-03 09:40", tz=TZ), price=100.1)
    with pytest.raises(ChartGenerationError, match="No regular-session bars"):
        generate_entry_chart("SPY", "quick-rise", signal, day_bars("2024-01-03").iloc[0:0], str(tmp_path))
    assert written == []


def test_write_failure_is_a_chart_error(monkeypatch, bars, tmp_path):
    def broken(*args, **kwargs):
        raise ValueError("kaleido is not installed")

    monkeypatch.setattr(chart_renderer.pio, "write_image", broken)
    signal = Signal(timestamp=pd.Timestamp("2024-01-03 09:40", tz=TZ), price=100.1)
    with pytest.raises(ChartGenerationError, match="kaleido"):
        generate_entry_chart("SPY", "quick-rise", signal, bars, str(tmp_path), suppress_sma=True)


def test_result_chart_shows_whole_day(written, bars, tmp_path):
    trade = Trade(
        trade_date="2024-01-03",
        entry_time="2024-01-03 09:35:00",
        exit_time="2024-01-03 09:50:00",
        entry_price=100.1,
        exit_price=100.3,
        return_pct=0.002,
        direction="long",
        year=2024,
        execution_price_base=100.05,
        exit_reason="profitTarget",
        initial_stop_loss_price=99.5,
        initial_profit_target_price=100.3,
    )
    path = generate_result_chart("SPY", "quick-rise", trade, bars, str(tmp_path), width=800, height=600)
    assert path.endswith("SPY_quick-rise_20240103_complete.png")
    call = written[0]
    assert len(call["fig"].data[0].x) == 30
    assert (call["width"], call["height"]) == (800, 600)
