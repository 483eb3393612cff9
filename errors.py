"""
Error taxonomy for the backtest pipeline

Fatal kinds (ConfigError, QueryExecutionError) abort a run before or while the
candidate set is built. Recoverable kinds (ChartGenerationError, LlmCallError,
OutputWriteError) are isolated to a single candidate and only logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class BacktestError(Exception):
    """Base class for every error raised by the backtest pipeline."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        # Only keep context that was actually provided
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class ConfigError(BacktestError):
    """Invalid or inconsistent configuration. Fatal before any candidate runs."""


class PatternNotFoundError(ConfigError):
    """Requested entry pattern is not registered."""


class QueryExecutionError(BacktestError):
    """Query engine failed. Fatal for the run, no partial dataset is usable."""


class ChartGenerationError(BacktestError):
    """Chart or overlay could not be rendered for one candidate."""


class LlmCallError(BacktestError):
    """A single LLM call failed or timed out. Counts as a non-vote."""


class OutputWriteError(BacktestError):
    """A per-candidate output artifact could not be written."""


RECOVERABLE_ERRORS = (ChartGenerationError, LlmCallError, OutputWriteError)


@dataclass
class Result(Generic[T]):
    """Success value or a named error kind, decided on by the caller."""

    value: Optional[T] = None
    error: Optional[BacktestError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BacktestError) -> "Result[T]":
        return cls(error=error)
