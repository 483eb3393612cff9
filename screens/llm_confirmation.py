"""
LLM chart confirmation screen.

Each candidate is shown to the model num_calls times; the candidate proceeds
only when enough calls agree on a direction.

Consensus rules:
- configured direction long/short: proceed iff votes for it >= agreement_threshold
- llm_decides: the direction reaching the threshold wins; when both reach it
  the one with more votes wins and an exact tie is rejected
- errored/timed-out calls never vote and never propose levels
- cost is the sum over every dispatched call, whether or not it voted and
  whether or not the candidate proceeds (errored calls only when
  bill_failed_calls is set)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from patterns.base import EnrichedSignal

from .base import EntryScreen, ScreenDecision
from .llm_client import LlmApiService, LlmResponse

logger = logging.getLogger(__name__)

RATIONALE_LOG_CHARS = 150


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def calculate_average_proposed_prices(
    responses: Sequence[LlmResponse], direction: str
) -> Tuple[Optional[float], Optional[float]]:
    """Mean stop loss / profit target over the calls that voted `direction` and proposed a number."""
    voters = [r for r in responses if r.is_directional and r.action == direction]
    stops = [r.proposed_stop_loss for r in voters if r.proposed_stop_loss is not None]
    targets = [r.proposed_profit_target for r in voters if r.proposed_profit_target is not None]
    return _mean(stops), _mean(targets)


def count_votes(responses: Sequence[LlmResponse]) -> Tuple[int, int]:
    long_votes = sum(1 for r in responses if r.is_directional and r.action == "long")
    short_votes = sum(1 for r in responses if r.is_directional and r.action == "short")
    return long_votes, short_votes


def total_cost(responses: Sequence[LlmResponse], bill_failed_calls: bool = True) -> float:
    return sum(r.cost or 0.0 for r in responses if bill_failed_calls or r.error is None)


def resolve_consensus_direction(
    long_votes: int, short_votes: int, configured_direction: str, threshold: int
) -> Optional[str]:
    if configured_direction == "long":
        return "long" if long_votes >= threshold else None
    if configured_direction == "short":
        return "short" if short_votes >= threshold else None
    long_ok = long_votes >= threshold
    short_ok = short_votes >= threshold
    if long_ok and short_ok:
        if long_votes == short_votes:
            return None
        return "long" if long_votes > short_votes else "short"
    if long_ok:
        return "long"
    if short_ok:
        return "short"
    return None


def _rationale(responses: Sequence[LlmResponse], direction: Optional[str]) -> Optional[str]:
    if direction is not None:
        parts = [
            r.rationalization
            for r in responses
            if r.is_directional and r.action == direction and r.rationalization
        ]
        if parts:
            return " | ".join(parts)
    for r in responses:
        if r.rationalization:
            return r.rationalization
    return None


def compute_consensus(
    responses: Sequence[LlmResponse],
    configured_direction: str,
    agreement_threshold: int,
    bill_failed_calls: bool = True,
    chart_path: Optional[str] = None,
    debug: bool = False,
) -> ScreenDecision:
    """Reduce settled call responses to a single decision."""
    long_votes, short_votes = count_votes(responses)
    cost = total_cost(responses, bill_failed_calls)
    direction = resolve_consensus_direction(long_votes, short_votes, configured_direction, agreement_threshold)

    decision = ScreenDecision(
        proceed=direction is not None,
        cost=cost,
        direction=direction,
        chart_path=chart_path,
        rationale=_rationale(responses, direction),
        long_votes=long_votes,
        short_votes=short_votes,
    )
    if direction is not None:
        stop, target = calculate_average_proposed_prices(responses, direction)
        decision.averaged_proposed_stop_loss = stop
        decision.averaged_proposed_profit_target = target
    if debug:
        decision.debug_responses = list(responses)
    return decision


def _print_vote(index: int, response: LlmResponse):
    text = response.rationalization or ""
    if len(text) > RATIONALE_LOG_CHARS:
        text = f"{text[:RATIONALE_LOG_CHARS]}..."
    error = f"Error: {response.error} — " if response.error else ""
    rationale = f'"{text}"' if text else ""
    print(f"   LLM {index}: {response.action} — {error}{rationale} (Cost: ${response.cost:.6f})")


class LlmConfirmationScreen:
    id = "llm-confirmation"
    name = "LLM Chart Confirmation Screen"

    def __init__(self, service_factory: Callable[[Any], LlmApiService] = LlmApiService):
        self.service_factory = service_factory

    def should_signal_proceed(
        self,
        signal: EnrichedSignal,
        chart_path: Optional[str],
        screen_config,
        app_config,
        context: Optional[Dict[str, Any]] = None,
        debug: bool = False,
        market_metrics_text: Optional[str] = None,
    ) -> ScreenDecision:
        """
        Gate one enriched signal.

        Args:
            signal: entry signal carrying ticker and trade_date
            chart_path: masked entry chart shown to the model (may be None)
            screen_config: ScreenConfig for this screen
            app_config: resolved BacktestConfig; its direction drives consensus
            context: optional extra inputs; 'market_metrics_text' is honoured when
                the explicit argument is not given
            debug: attach the raw per-call responses to the decision
            market_metrics_text: market context appended to every prompt
        """
        if not screen_config.enabled:
            logger.info(
                "[%s] Screen not enabled. Signal for %s on %s proceeds without LLM confirmation.",
                self.id, signal.ticker, signal.trade_date,
            )
            return ScreenDecision(proceed=True, cost=0.0, chart_path=chart_path)

        service = self.service_factory(screen_config)
        if not service.is_enabled():
            logger.warning(
                "[%s] LLM service is not enabled (missing API key?) for %s on %s. Signal proceeds without LLM confirmation.",
                self.id, signal.ticker, signal.trade_date,
            )
            return ScreenDecision(proceed=True, cost=0.0, chart_path=chart_path)

        if market_metrics_text is None and context:
            market_metrics_text = context.get("market_metrics_text")

        responses: List[LlmResponse] = service.get_trade_decisions(chart_path, market_metrics_text)
        for i, response in enumerate(responses, 1):
            _print_vote(i, response)

        decision = compute_consensus(
            responses,
            configured_direction=app_config.direction,
            agreement_threshold=screen_config.agreement_threshold,
            bill_failed_calls=screen_config.bill_failed_calls,
            chart_path=chart_path,
            debug=debug,
        )

        cost_text = f"(Total Cost: ${decision.cost:.6f})"
        if decision.proceed:
            print(f"  LLM consensus to GO {decision.direction.upper()}. Signal proceeds. {cost_text}")
        else:
            print(
                f"  LLM consensus ({decision.long_votes} long, {decision.short_votes} short) does not meet "
                f"threshold {screen_config.agreement_threshold} for direction '{app_config.direction}' "
                f"for {signal.ticker} on {signal.trade_date}. Signal is filtered out. {cost_text}"
            )
        return decision


def run_entry_screen(
    screen: Optional[EntryScreen],
    signal: EnrichedSignal,
    chart_path: Optional[str],
    screen_config,
    app_config,
    context: Optional[Dict[str, Any]] = None,
    debug: bool = False,
    market_metrics_text: Optional[str] = None,
) -> ScreenDecision:
    """Run `screen` when one is supplied and enabled; otherwise pass the signal through at no cost."""
    if screen is None or screen_config is None or not screen_config.enabled:
        return ScreenDecision(proceed=True, cost=0.0, chart_path=chart_path)
    return screen.should_signal_proceed(
        signal,
        chart_path,
        screen_config,
        app_config,
        context=context,
        debug=debug,
        market_metrics_text=market_metrics_text,
    )
