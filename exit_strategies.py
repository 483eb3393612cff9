"""
Exit strategies and exit price placement.

Price strategies (stopLoss, profitTarget, trailingStop) scan regular-session
bars after entry and, once their level is touched, fill at the next bar's open
(or the touching bar's close when it is the last bar). Time strategies
(maxHoldTime, endOfDay) fill at the close of the bar that reaches their time.

Level priority for stop loss / profit target:
    1. LLM proposed price (use_llm_proposed_price and a number is available)
    2. ATR multiple (entry ATR and atr_multiplier available)
    3. percent_from_entry
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from config_utils import (
    ExitStrategiesConfig,
    PriceLevelOptions,
    SlippageOptions,
    TrailingStopOptions,
)
from time_utils import filter_regular_session, to_market_series, to_market_time

logger = logging.getLogger(__name__)


@dataclass
class ExitSignal:
    timestamp: pd.Timestamp
    price: float
    reason: str
    type: str = "exit"


@dataclass
class ExitLevel:
    price: Optional[float] = None
    source: str = "none"  # llm | atr | percentage | none
    multiplier_used: Optional[float] = None


class ExitStrategy(Protocol):
    name: str

    def evaluate(
        self,
        entry_price: float,
        entry_time,
        bars: pd.DataFrame,
        is_long: bool,
        atr: Optional[float] = None,
        level_override: Optional[float] = None,
    ) -> Optional[ExitSignal]: ...


def calculate_atr_stop_loss(entry_price: float, atr: float, multiplier: float, is_long: bool) -> float:
    offset = atr * multiplier
    return entry_price - offset if is_long else entry_price + offset


def calculate_exit_price(
    entry_price: float,
    options: PriceLevelOptions,
    is_long: bool,
    atr: Optional[float] = None,
    llm_proposed_price: Optional[float] = None,
    is_stop_loss: bool = True,
) -> ExitLevel:
    if options.use_llm_proposed_price and llm_proposed_price is not None:
        return ExitLevel(price=float(llm_proposed_price), source="llm")

    if atr and options.atr_multiplier:
        if is_stop_loss:
            price = calculate_atr_stop_loss(entry_price, atr, options.atr_multiplier, is_long)
        else:
            offset = atr * options.atr_multiplier
            price = entry_price + offset if is_long else entry_price - offset
        return ExitLevel(price=price, source="atr", multiplier_used=options.atr_multiplier)

    if options.percent_from_entry:
        pct = options.percent_from_entry / 100
        # Stop loss sits on the losing side, target on the winning side
        adverse = is_long == is_stop_loss
        price = entry_price * (1 - pct) if adverse else entry_price * (1 + pct)
        return ExitLevel(price=price, source="percentage")

    return ExitLevel()


def calculate_exit_prices(
    entry_price: float,
    atr: Optional[float],
    is_long: bool,
    stop_loss_options: Optional[PriceLevelOptions] = None,
    profit_target_options: Optional[PriceLevelOptions] = None,
    llm_stop_loss: Optional[float] = None,
    llm_profit_target: Optional[float] = None,
) -> Tuple[ExitLevel, ExitLevel]:
    """(stop loss, profit target) levels; a missing options block yields an empty level."""
    stop = (
        calculate_exit_price(entry_price, stop_loss_options, is_long, atr, llm_stop_loss, True)
        if stop_loss_options
        else ExitLevel()
    )
    target = (
        calculate_exit_price(entry_price, profit_target_options, is_long, atr, llm_profit_target, False)
        if profit_target_options
        else ExitLevel()
    )
    return stop, target


def apply_slippage(price: float, is_long: bool, slippage: Optional[SlippageOptions], is_entry: bool = False) -> float:
    """Move `price` against the trade: entries pay up, exits give back."""
    if slippage is None:
        return price
    # Long entry and short exit are buys
    buying = is_long == is_entry
    if slippage.model == "percent":
        factor = slippage.value / 100
        return price * (1 + factor) if buying else price * (1 - factor)
    return price + slippage.value if buying else price - slippage.value


def bars_after(bars: pd.DataFrame, entry_time, session_only: bool = True) -> pd.DataFrame:
    """Bars stamped strictly after entry, optionally limited to the regular session."""
    if bars is None or bars.empty:
        return pd.DataFrame(columns=["Datetime", "Open", "High", "Low", "Close", "Volume"])
    entry_ts = to_market_time(entry_time)
    frame = filter_regular_session(bars) if session_only else bars
    if frame.empty:
        return frame
    stamps = to_market_series(frame["Datetime"])
    out = frame.loc[stamps > entry_ts].copy()
    out["Datetime"] = stamps[stamps > entry_ts]
    return out.sort_values("Datetime").reset_index(drop=True)


def _fill_after_touch(bars: pd.DataFrame, i: int, reason: str) -> ExitSignal:
    if i < len(bars) - 1:
        nxt = bars.iloc[i + 1]
        return ExitSignal(timestamp=nxt["Datetime"], price=float(nxt["Open"]), reason=reason)
    bar = bars.iloc[i]
    return ExitSignal(timestamp=bar["Datetime"], price=float(bar["Close"]), reason=reason)


def _first_touch(bars: pd.DataFrame, level: float, touch_high: bool, reason: str) -> Optional[ExitSignal]:
    column = bars["High"] if touch_high else bars["Low"]
    hits = (column >= level) if touch_high else (column <= level)
    if not hits.any():
        return None
    return _fill_after_touch(bars, int(hits.to_numpy().argmax()), reason)


class StopLossStrategy:
    name = "stopLoss"

    def __init__(self, options: PriceLevelOptions):
        self.options = options

    def level(self, entry_price: float, is_long: bool, atr=None, level_override=None) -> ExitLevel:
        return calculate_exit_price(entry_price, self.options, is_long, atr, level_override, True)

    def evaluate(self, entry_price, entry_time, bars, is_long, atr=None, level_override=None):
        trading = bars_after(bars, entry_time)
        level = self.level(entry_price, is_long, atr, level_override)
        if trading.empty or level.price is None:
            return None
        return _first_touch(trading, level.price, touch_high=not is_long, reason=self.name)


class ProfitTargetStrategy:
    name = "profitTarget"

    def __init__(self, options: PriceLevelOptions):
        self.options = options

    def level(self, entry_price: float, is_long: bool, atr=None, level_override=None) -> ExitLevel:
        return calculate_exit_price(entry_price, self.options, is_long, atr, level_override, False)

    def evaluate(self, entry_price, entry_time, bars, is_long, atr=None, level_override=None):
        trading = bars_after(bars, entry_time)
        level = self.level(entry_price, is_long, atr, level_override)
        if trading.empty or level.price is None:
            return None
        return _first_touch(trading, level.price, touch_high=is_long, reason=self.name)


@dataclass
class TrailingLevels:
    activation_level: float
    immediate: bool
    trail_amount: Optional[float]  # absolute, from ATR
    trail_pct: Optional[float]  # fraction

    @property
    def is_atr_based(self) -> bool:
        return self.trail_amount is not None


class TrailingStopStrategy:
    name = "trailingStop"

    def __init__(self, options: TrailingStopOptions):
        self.options = options

    def levels(self, entry_price: float, is_long: bool, atr: Optional[float] = None) -> Optional[TrailingLevels]:
        """Activation and trail distance, or None when no trail can be placed (ATR-only trail without an ATR)."""
        opts = self.options
        if atr and opts.activation_atr_multiplier is not None:
            offset = atr * opts.activation_atr_multiplier
            immediate = opts.activation_atr_multiplier == 0
            activation = entry_price + offset if is_long else entry_price - offset
        elif opts.activation_percent is not None:
            pct = opts.activation_percent / 100
            immediate = pct == 0
            activation = entry_price * (1 + pct) if is_long else entry_price * (1 - pct)
        else:
            immediate = True
            activation = entry_price

        trail_amount = atr * opts.trail_atr_multiplier if atr and opts.trail_atr_multiplier is not None else None
        trail_pct = opts.trail_percent / 100 if opts.trail_percent is not None else None
        if trail_amount is None and trail_pct is None:
            return None
        return TrailingLevels(activation, immediate, trail_amount, trail_pct)

    def evaluate(self, entry_price, entry_time, bars, is_long, atr=None, level_override=None):
        trading = bars_after(bars, entry_time)
        if trading.empty:
            return None
        levels = self.levels(entry_price, is_long, atr)
        if levels is None:
            logger.warning("Trailing stop skipped for entry at %s: no entry ATR and no trail_percent", entry_time)
            return None
        activated = levels.immediate
        best = entry_price

        for i, bar in enumerate(trading.itertuples(index=False)):
            if is_long:
                if not activated and bar.High >= levels.activation_level:
                    activated = True
                if not activated:
                    continue
                best = max(best, bar.High)
                stop = best - levels.trail_amount if levels.is_atr_based else best * (1 - levels.trail_pct)
                if bar.Low <= stop:
                    return _fill_after_touch(trading, i, self.name)
            else:
                if not activated and bar.Low <= levels.activation_level:
                    activated = True
                if not activated:
                    continue
                best = min(best, bar.Low)
                stop = best + levels.trail_amount if levels.is_atr_based else best * (1 + levels.trail_pct)
                if bar.High >= stop:
                    return _fill_after_touch(trading, i, self.name)
        return None


class MaxHoldTimeStrategy:
    name = "maxHoldTime"

    def __init__(self, minutes: int):
        self.minutes = minutes

    def evaluate(self, entry_price, entry_time, bars, is_long, atr=None, level_override=None):
        trading = bars_after(bars, entry_time)
        if trading.empty:
            return None
        deadline = to_market_time(entry_time) + pd.Timedelta(minutes=self.minutes)
        due = trading[trading["Datetime"] >= deadline]
        if due.empty:
            # Session ended first; endOfDay or the fallback closes the trade
            return None
        bar = due.iloc[0]
        return ExitSignal(timestamp=bar["Datetime"], price=float(bar["Close"]), reason=self.name)


class EndOfDayStrategy:
    name = "endOfDay"

    def __init__(self, time: str = "16:00"):
        self.time = time

    def evaluate(self, entry_price, entry_time, bars, is_long, atr=None, level_override=None):
        entry_ts = to_market_time(entry_time)
        trading = bars_after(bars, entry_ts, session_only=False)
        if trading.empty:
            return None
        same_day = trading[trading["Datetime"].dt.date == entry_ts.date()]
        if same_day.empty:
            return None
        hour, minute = (int(p) for p in self.time.split(":"))
        cutoff = entry_ts.normalize() + pd.Timedelta(hours=hour, minutes=minute)
        due = same_day[same_day["Datetime"] >= cutoff]
        bar = due.iloc[0] if not due.empty else same_day.iloc[-1]
        return ExitSignal(timestamp=bar["Datetime"], price=float(bar["Close"]), reason=self.name)


def create_exit_strategies(config: ExitStrategiesConfig) -> List[ExitStrategy]:
    """Price strategies in configured order, then maxHoldTime, then endOfDay."""
    strategies: List[ExitStrategy] = []
    for name in config.enabled:
        if name == "stopLoss" and config.stop_loss:
            strategies.append(StopLossStrategy(config.stop_loss))
        elif name == "profitTarget" and config.profit_target:
            strategies.append(ProfitTargetStrategy(config.profit_target))
        elif name == "trailingStop" and config.trailing_stop:
            strategies.append(TrailingStopStrategy(config.trailing_stop))
    if config.max_hold_minutes:
        strategies.append(MaxHoldTimeStrategy(config.max_hold_minutes))
    if config.end_of_day_time:
        strategies.append(EndOfDayStrategy(config.end_of_day_time))
    return strategies


def evaluate_exit_strategies(
    strategies: Sequence[ExitStrategy],
    entry_price: float,
    entry_time,
    bars: pd.DataFrame,
    direction: str,
    atr: Optional[float] = None,
    llm_stop_loss: Optional[float] = None,
    llm_profit_target: Optional[float] = None,
) -> Optional[ExitSignal]:
    """
    Earliest exit across all strategies; ties go to the earlier strategy in the list.

    Falls back to the last post-entry bar's close (reason endOfDay) when nothing
    fires. Returns None only when no bar follows the entry at all.
    """
    is_long = direction == "long"
    best: Optional[ExitSignal] = None
    for strategy in strategies:
        override = None
        if strategy.name == "stopLoss":
            override = llm_stop_loss
        elif strategy.name == "profitTarget":
            override = llm_profit_target
        signal = strategy.evaluate(entry_price, entry_time, bars, is_long, atr, override)
        if signal is not None and (best is None or signal.timestamp < best.timestamp):
            best = signal

    if best is not None:
        return best

    remaining = bars_after(bars, entry_time, session_only=False)
    if remaining.empty:
        logger.debug("No bars after entry %s; no exit available", entry_time)
        return None
    last = remaining.iloc[-1]
    return ExitSignal(timestamp=last["Datetime"], price=float(last["Close"]), reason="endOfDay")
