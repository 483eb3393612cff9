from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from time_utils import MARKET_TZ

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path("cache")
BAR_COLUMNS = ["Datetime", "Open", "High", "Low", "Close", "Volume"]


def canonical_interval(interval: str) -> str:
    i = (interval or "").lower()
    if i in {"1m", "1min", "minute", "m", "min"}:
        return "1m"
    if i in {"5m", "5min"}:
        return "5m"
    if i in {"1d", "day", "daily", "d"}:
        return "1d"
    return i


def get_cache_path(cache_dir: Path, symbol: str, date_str: str, interval: str) -> Path:
    return Path(cache_dir) / symbol.upper() / f"{date_str}_{canonical_interval(interval)}.csv"


def empty_bars() -> pd.DataFrame:
    return pd.DataFrame(columns=BAR_COLUMNS)


def _localize(series: pd.Series) -> pd.Series:
    series = pd.to_datetime(series, errors="coerce")
    if getattr(series.dt, "tz", None) is None:
        return series.dt.tz_localize(MARKET_TZ)
    return series.dt.tz_convert(MARKET_TZ)


def normalize_bars(values: Union[pd.DataFrame, List[Dict], None]) -> pd.DataFrame:
    """Coerce query rows or a loose DataFrame into the canonical bar frame.

    Column names are matched case-insensitively (``timestamp``/``date``/``time``
    map to ``Datetime``), prices and volume become numeric, timestamps become
    tz-aware market time, rows are sorted ascending.
    """
    if isinstance(values, pd.DataFrame):
        df = values.copy()
    else:
        df = pd.DataFrame(values or [])
    if df.empty:
        return empty_bars()

    lower = {c.lower(): c for c in df.columns}

    def pick(*names):
        for n in names:
            if n in lower:
                return lower[n]
        return None

    ren = {}
    for target, aliases in (
        ("Datetime", ("datetime", "timestamp", "date", "time")),
        ("Open", ("open",)),
        ("High", ("high",)),
        ("Low", ("low",)),
        ("Close", ("close",)),
        ("Volume", ("volume",)),
    ):
        col = pick(*aliases)
        if col:
            ren[col] = target
    df = df.rename(columns=ren)

    if "Datetime" in df.columns:
        df["Datetime"] = _localize(df["Datetime"])
    for c in BAR_COLUMNS[1:]:
        if c in df.columns:
            df[c] = pd.to_numeric(df[c], errors="coerce")

    cols = [c for c in BAR_COLUMNS if c in df.columns]
    return df[cols].sort_values("Datetime").reset_index(drop=True)


def load_cached_day(
    cache_dir: Path, symbol: str, date_str: str, interval: str
) -> Optional[pd.DataFrame]:
    """Read one cached day, or None when the file is absent or unreadable."""
    path = get_cache_path(cache_dir, symbol, date_str, interval)
    if not path.exists():
        return None
    try:
        df = pd.read_csv(path, dtype={"Volume": float})
    except (OSError, ValueError, pd.errors.ParserError) as exc:
        logger.warning("Ignoring unreadable cache file %s: %s", path, exc)
        return None
    if not all(c in df.columns for c in BAR_COLUMNS):
        logger.warning("Ignoring cache file %s with columns %s", path, list(df.columns))
        return None
    return normalize_bars(df)


def save_day(
    cache_dir: Path,
    symbol: str,
    date_str: str,
    interval: str,
    values: Union[pd.DataFrame, List[Dict]],
) -> Path:
    df = normalize_bars(values)
    out_path = get_cache_path(cache_dir, symbol, date_str, interval)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False)
    return out_path
