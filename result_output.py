"""Per-candidate LLM decision files written next to the entry chart."""

from __future__ import annotations

import datetime
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from errors import OutputWriteError
from patterns.base import EnrichedSignal
from screens.base import ScreenDecision
from time_utils import to_market_time

logger = logging.getLogger(__name__)


@dataclass
class BacktestDetails:
    execution_price: Optional[float] = None
    atr_value: Optional[float] = None
    stop_loss_price: Optional[float] = None
    profit_target_price: Optional[float] = None


def result_output_path(chart_path: str, proceed: bool) -> str:
    stem, _ = os.path.splitext(chart_path)
    action = "ENTER" if proceed else "DO_NOT_ENTER"
    return f"{stem}_action_{action}.txt"


def format_llm_result(
    signal: EnrichedSignal,
    decision: ScreenDecision,
    details: Optional[BacktestDetails] = None,
    generated_at: Optional[datetime.datetime] = None,
) -> str:
    lines: List[str] = []
    entry_ts = to_market_time(signal.timestamp)
    lines.append("Backtest LLM Analysis")
    lines.append(f"Ticker: {signal.ticker}")
    lines.append(f"Trade Date: {signal.trade_date}")
    lines.append(f"Entry Signal: {entry_ts.strftime('%Y-%m-%d %H:%M:%S')} @ ${signal.price:.2f}")
    lines.append("")

    lines.append("LLM Analysis Results:")
    lines.append(f"Decision: {'ENTER TRADE' if decision.proceed else 'DO NOT ENTER'}")
    if decision.direction:
        lines.append(f"Direction: {decision.direction.upper()}")
    lines.append(f"Votes: {decision.long_votes} long, {decision.short_votes} short")
    lines.append(f"LLM Cost: ${decision.cost:.6f}")

    if decision.rationale:
        lines.append("")
        lines.append("LLM Rationale:")
        lines.append(decision.rationale)

    if decision.debug_responses:
        lines.append("")
        lines.append("Individual LLM Responses:")
        for i, response in enumerate(decision.debug_responses, 1):
            lines.append(f"LLM {i}: {response.action.upper()}")
            if response.error:
                lines.append(f"   Error: {response.error}")
            if response.rationalization:
                lines.append(f"   Reasoning: {response.rationalization}")
            if response.proposed_stop_loss is not None:
                lines.append(f"   Proposed Stop: ${response.proposed_stop_loss:.2f}")
            if response.proposed_profit_target is not None:
                lines.append(f"   Proposed Target: ${response.proposed_profit_target:.2f}")
            lines.append(f"   Cost: ${response.cost:.6f}")

    if decision.proceed and decision.direction:
        lines.append("")
        lines.append("Trading Levels:")
        lines.append(f"Entry Price: ${signal.price:.2f}")
        if decision.averaged_proposed_stop_loss is not None:
            lines.append(f"Stop Loss: ${decision.averaged_proposed_stop_loss:.2f}")
        if decision.averaged_proposed_profit_target is not None:
            lines.append(f"Profit Target: ${decision.averaged_proposed_profit_target:.2f}")

    if details is not None:
        lines.append("")
        lines.append("Backtest Details:")
        if details.execution_price is not None:
            lines.append(f"Execution Price: ${details.execution_price:.2f}")
        if details.atr_value is not None:
            lines.append(f"ATR Value: {details.atr_value:.4f}")
        if details.stop_loss_price is not None:
            lines.append(f"Final Stop Loss: ${details.stop_loss_price:.2f}")
        if details.profit_target_price is not None:
            lines.append(f"Final Profit Target: ${details.profit_target_price:.2f}")

    generated_at = generated_at or datetime.datetime.now(datetime.timezone.utc)
    lines.append("")
    lines.append(f"Generated: {generated_at.isoformat()}")
    return "\n".join(lines) + "\n"


def write_llm_result(
    chart_path: str,
    signal: EnrichedSignal,
    decision: ScreenDecision,
    details: Optional[BacktestDetails] = None,
) -> str:
    """Write the decision file for one candidate and return its path."""
    path = result_output_path(chart_path, decision.proceed)
    content = format_llm_result(signal, decision, details)
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            f.write(content)
    except OSError as exc:
        raise OutputWriteError(f"Could not write LLM result: {exc}", path=path, ticker=signal.ticker) from exc
    logger.debug("Wrote LLM result %s", path)
    return path
