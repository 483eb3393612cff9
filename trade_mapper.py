"""
Trade record and the raw-row -> Trade mapper.

Rows arrive from the query layer as loose {column: str | number} mappings. The
mapper is an allow-list: known columns are coerced to their types, anything
else on the row is dropped.

Return sign convention:
    long:  (exit - entry) / entry
    short: (entry - exit) / entry
so a profitable trade always has return_pct > 0.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

DIRECTIONS = ("long", "short")


@dataclass
class Trade:
    trade_date: str
    entry_time: str
    exit_time: str
    entry_price: float
    exit_price: float
    return_pct: float
    direction: str
    year: int
    execution_price_base: float
    rise_pct: Optional[float] = None
    market_open: Optional[float] = None
    total_trading_days: Optional[int] = None
    match_count: Optional[int] = None
    chart_path: Optional[str] = None
    exit_reason: Optional[str] = None
    entry_atr_value: Optional[float] = None
    initial_stop_loss_price: Optional[float] = None
    initial_profit_target_price: Optional[float] = None
    ts_activation_level: Optional[float] = None
    ts_trail_amount: Optional[float] = None
    is_stop_loss_atr_based: Optional[bool] = None
    is_profit_target_atr_based: Optional[bool] = None
    is_trailing_stop_atr_based: Optional[bool] = None
    is_stop_loss_llm_based: Optional[bool] = None
    is_profit_target_llm_based: Optional[bool] = None
    stop_loss_atr_multiplier_used: Optional[float] = None
    profit_target_atr_multiplier_used: Optional[float] = None
    ts_activation_atr_multiplier_used: Optional[float] = None
    ts_trail_atr_multiplier_used: Optional[float] = None

    @property
    def is_win(self) -> bool:
        return self.return_pct > 0


_OPTIONAL_FLOATS = (
    "entry_atr_value",
    "initial_stop_loss_price",
    "initial_profit_target_price",
    "ts_activation_level",
    "ts_trail_amount",
    "stop_loss_atr_multiplier_used",
    "profit_target_atr_multiplier_used",
    "ts_activation_atr_multiplier_used",
    "ts_trail_atr_multiplier_used",
)

_OPTIONAL_BOOLS = (
    "is_stop_loss_atr_based",
    "is_profit_target_atr_based",
    "is_trailing_stop_atr_based",
    "is_stop_loss_llm_based",
    "is_profit_target_llm_based",
)

TRADE_FIELDS = frozenset(f.name for f in fields(Trade))


def to_float(value: Any) -> Optional[float]:
    """Number or numeric string -> float; missing, blank, NaN or garbage -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    return int(number) if number is not None else None


def to_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return None


def to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def calculate_return_pct(entry_price: float, exit_price: float, direction: str) -> float:
    if entry_price == 0:
        raise ValueError("entry_price must be non-zero to compute a return")
    if direction == "short":
        return (entry_price - exit_price) / entry_price
    return (exit_price - entry_price) / entry_price


def _required_float(row: Mapping[str, Any], key: str) -> float:
    value = to_float(row.get(key))
    if value is None:
        raise ValueError(f"Raw trade row is missing a numeric '{key}': {row.get(key)!r}")
    return value


def map_raw_row_to_trade(row: Mapping[str, Any], direction: str) -> Trade:
    """
    Normalize one raw candidate row into a Trade.

    Args:
        row: Mapping produced by the query layer, optionally enriched with exit
            and risk-management columns by the orchestrator
        direction: Resolved trade direction ('long' or 'short')

    Raises:
        ValueError: unknown direction, or entry/exit price missing
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be 'long' or 'short', got {direction!r}")

    entry_price = _required_float(row, "entry_price")
    exit_price = _required_float(row, "exit_price")
    base = to_float(row.get("execution_price_base"))
    trade_date = to_text(row.get("trade_date")) or ""

    year = to_int(row.get("year"))
    if year is None and len(trade_date) >= 4 and trade_date[:4].isdigit():
        year = int(trade_date[:4])

    values: Dict[str, Any] = {
        "trade_date": trade_date,
        "entry_time": to_text(row.get("entry_time")) or "",
        "exit_time": to_text(row.get("exit_time")) or "",
        "entry_price": entry_price,
        "exit_price": exit_price,
        "return_pct": calculate_return_pct(entry_price, exit_price, direction),
        "direction": direction,
        "year": year if year is not None else 0,
        "execution_price_base": base if base is not None else entry_price,
        "rise_pct": to_float(row.get("rise_pct")),
        "market_open": to_float(row.get("market_open")),
        "total_trading_days": to_int(row.get("total_trading_days")),
        "match_count": to_int(row.get("match_count")),
        "chart_path": to_text(row.get("chart_path")),
        "exit_reason": to_text(row.get("exit_reason")),
    }
    for key in _OPTIONAL_FLOATS:
        values[key] = to_float(row.get(key))
    for key in _OPTIONAL_BOOLS:
        values[key] = to_bool(row.get(key))
    return Trade(**values)
