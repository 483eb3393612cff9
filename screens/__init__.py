"""Entry screens: gates applied to a candidate before it becomes a trade.

Use `screens.run_entry_screen()` from the orchestrator; it handles the
disabled / missing screen pass-through.
"""

from __future__ import annotations

from .base import EntryScreen, ScreenDecision  # noqa: F401
from .llm_client import LlmApiService, LlmResponse  # noqa: F401
from .llm_confirmation import (  # noqa: F401
    LlmConfirmationScreen,
    calculate_average_proposed_prices,
    compute_consensus,
    run_entry_screen,
)

__all__ = [
    "EntryScreen",
    "LlmApiService",
    "LlmConfirmationScreen",
    "LlmResponse",
    "ScreenDecision",
    "calculate_average_proposed_prices",
    "compute_consensus",
    "run_entry_screen",
]
