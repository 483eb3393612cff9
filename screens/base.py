from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from patterns.base import EnrichedSignal


@dataclass
class ScreenDecision:
    """Outcome of gating one candidate through an entry screen."""

    proceed: bool
    cost: float = 0.0
    direction: Optional[str] = None
    chart_path: Optional[str] = None
    averaged_proposed_stop_loss: Optional[float] = None
    averaged_proposed_profit_target: Optional[float] = None
    rationale: Optional[str] = None
    long_votes: int = 0
    short_votes: int = 0
    debug_responses: List[Any] = field(default_factory=list)


class EntryScreen(Protocol):
    id: str
    name: str

    def should_signal_proceed(
        self,
        signal: EnrichedSignal,
        chart_path: Optional[str],
        screen_config: Any,
        app_config: Any,
        context: Optional[Dict[str, Any]] = None,
        debug: bool = False,
        market_metrics_text: Optional[str] = None,
    ) -> ScreenDecision: ...
