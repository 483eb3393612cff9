import datetime
import os

import pandas as pd
import pytest

from errors import OutputWriteError
from patterns import EnrichedSignal
from result_output import BacktestDetails, format_llm_result, result_output_path, write_llm_result
from screens import LlmResponse, ScreenDecision


@pytest.fixture
def signal():
    return EnrichedSignal(
        timestamp=pd.Timestamp("2024-01-03 09:35", tz="America/New_York"),
        price=226.38,
        direction="long",
        ticker="SPY",
        trade_date="2024-01-03",
    )


@pytest.fixture
def confirmed():
    return ScreenDecision(
        proceed=True,
        cost=0.0135,
        direction="long",
        averaged_proposed_stop_loss=225.5,
        averaged_proposed_profit_target=228.0,
        rationale="Higher lows | Volume surge",
        long_votes=2,
        short_votes=1,
    )


GENERATED = datetime.datetime(2024, 1, 3, 15, 0, tzinfo=datetime.timezone.utc)


def test_output_path_encodes_decision():
    assert result_output_path("charts/quick-rise/SPY_quick-rise_20240103_masked.png", True) == (
        "charts/quick-rise/SPY_quick-rise_20240103_masked_action_ENTER.txt"
    )
    assert result_output_path("a/b.png", False) == "a/b_action_DO_NOT_ENTER.txt"


def test_format_confirmed_result(signal, confirmed):
    details = BacktestDetails(execution_price=226.49, atr_value=0.4123, stop_loss_price=225.5, profit_target_price=228.0)
    text = format_llm_result(signal, confirmed, details, generated_at=GENERATED)
    lines = text.splitlines()

    assert lines[0] == "Backtest LLM Analysis"
    assert "Ticker: SPY" in lines
    assert "Trade Date: 2024-01-03" in lines
    assert "Entry Signal: 2024-01-03 09:35:00 @ $226.38" in lines
    assert "Decision: ENTER TRADE" in lines
    assert "Direction: LONG" in lines
    assert "Votes: 2 long, 1 short" in lines
    assert "LLM Cost: $0.013500" in lines
    assert "Higher lows | Volume surge" in lines
    assert "Stop Loss: $225.50" in lines
    assert "Profit Target: $228.00" in lines
    assert "Execution Price: $226.49" in lines
    assert "ATR Value: 0.4123" in lines
    assert lines[-1] == "Generated: 2024-01-03T15:00:00+00:00"


def test_format_rejected_result_has_no_levels(signal):
    decision = ScreenDecision(proceed=False, cost=0.004, short_votes=1)
    text = format_llm_result(signal, decision, generated_at=GENERATED)
    assert "Decision: DO NOT ENTER" in text
    assert "Trading Levels:" not in text
    assert "Backtest Details:" not in text


def test_debug_responses_are_listed(signal, confirmed):
    confirmed.debug_responses = [
        LlmResponse(action="long", rationalization="Trend", proposed_stop_loss=225.0, cost=0.0045),
        LlmResponse(error="Timed out after 60.0s"),
    ]
    text = format_llm_result(signal, confirmed, generated_at=GENERATED)
    assert "LLM 1: LONG" in text
    assert "   Reasoning: Trend" in text
    assert "   Proposed Stop: $225.00" in text
    assert "LLM 2: DO_NOTHING" in text
    assert "   Error: Timed out after 60.0s" in text


def test_write_llm_result_next_to_chart(tmp_path, signal, confirmed):
    chart = tmp_path / "quick-rise" / "SPY_quick-rise_20240103_masked.png"
    path = write_llm_result(str(chart), signal, confirmed)
    assert path == str(tmp_path / "quick-rise" / "SPY_quick-rise_20240103_masked_action_ENTER.txt")
    assert os.path.exists(path)
    with open(path) as f:
        assert "Decision: ENTER TRADE" in f.read()


def test_write_failure_raises_output_error(tmp_path, signal, confirmed):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("file")
    with pytest.raises(OutputWriteError):
        write_llm_result(str(blocker / "chart.png"), signal, confirmed)
