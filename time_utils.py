"""
Market clock helpers.

- Regular session classification (09:30-16:00 America/New_York, inclusive)
- Previous trading day lookup (weekends skipped)
- Display timezone for console reports, configured by abbreviation in config.json

Supported keys in config.json:
{
  "timezone": "ET"  # or PT, PST, PDT, CT, CST, CDT, MT, MST, MDT, EST, EDT, UTC
}
"""

from __future__ import annotations

import datetime
from typing import Dict, Optional, Tuple

import pandas as pd
from zoneinfo import ZoneInfo

MARKET_TZ = ZoneInfo("America/New_York")

# Minutes since midnight, local market time
SESSION_OPEN_MINUTE = 9 * 60 + 30
SESSION_CLOSE_MINUTE = 16 * 60

# Map common US abbreviations to IANA zones
_ABBREV_TO_IANA: Dict[str, str] = {
    "PDT": "America/Los_Angeles",
    "PST": "America/Los_Angeles",
    "PT": "America/Los_Angeles",
    "MDT": "America/Denver",
    "MST": "America/Denver",
    "MT": "America/Denver",
    "CDT": "America/Chicago",
    "CST": "America/Chicago",
    "CT": "America/Chicago",
    "EDT": "America/New_York",
    "EST": "America/New_York",
    "ET": "America/New_York",
    "UTC": "UTC",
}

_DEFAULT_ABBREV = "ET"


def to_market_time(ts) -> pd.Timestamp:
    """Coerce a timestamp (str, datetime, Timestamp) to tz-aware New York time.

    Naive values are taken to already be in market time, which is how the
    ticker CSVs and the query layer express them.
    """
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        return stamp.tz_localize(MARKET_TZ)
    return stamp.tz_convert(MARKET_TZ)


def is_regular_session(ts) -> bool:
    stamp = to_market_time(ts)
    minutes = stamp.hour * 60 + stamp.minute
    return SESSION_OPEN_MINUTE <= minutes <= SESSION_CLOSE_MINUTE


def to_market_series(values: pd.Series) -> pd.Series:
    """Vectorised to_market_time for a column of timestamps."""
    stamps = pd.to_datetime(values)
    if stamps.dt.tz is None:
        return stamps.dt.tz_localize(MARKET_TZ)
    return stamps.dt.tz_convert(MARKET_TZ)


def filter_regular_session(bars: pd.DataFrame) -> pd.DataFrame:
    """Return only the bars stamped inside the regular session."""
    if bars is None or bars.empty:
        return pd.DataFrame(columns=["Datetime", "Open", "High", "Low", "Close", "Volume"])
    stamps = to_market_series(bars["Datetime"])
    minutes = stamps.dt.hour * 60 + stamps.dt.minute
    mask = (minutes >= SESSION_OPEN_MINUTE) & (minutes <= SESSION_CLOSE_MINUTE)
    return bars.loc[mask]


def previous_trading_day(day) -> datetime.date:
    """Calendar day before `day`, skipping Saturday and Sunday (holidays are not known)."""
    if isinstance(day, str):
        day = datetime.datetime.strptime(day, "%Y-%m-%d").date()
    elif isinstance(day, datetime.datetime):
        day = day.date()
    prev = day - datetime.timedelta(days=1)
    while prev.weekday() >= 5:
        prev -= datetime.timedelta(days=1)
    return prev


def generate_timestamp(now: Optional[datetime.datetime] = None) -> str:
    """Filename-safe UTC timestamp, e.g. 2025-03-14T15-09-26."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S")


def get_display_timezone(abbrev: Optional[str] = None) -> Tuple[ZoneInfo, str]:
    """
    Returns a pair (tzinfo, label_abbrev) for reporting.

    Unknown or missing abbreviations fall back to market time (ET).
    """
    label = str(abbrev or _DEFAULT_ABBREV).upper()
    iana = _ABBREV_TO_IANA.get(label)
    if not iana:
        label = _DEFAULT_ABBREV
        iana = _ABBREV_TO_IANA[_DEFAULT_ABBREV]
    return ZoneInfo(iana), label


def get_timezone_label_for_date(
    tzinfo: ZoneInfo, sample_date: datetime.datetime | None = None
) -> str:
    """
    Get the actual timezone abbreviation (e.g., EST or EDT) for a given date.

    Args:
        tzinfo: The timezone to check
        sample_date: A representative date to check DST status. If None, uses current time.
    """
    if sample_date is None:
        sample_date = datetime.datetime.now(tz=tzinfo)
    elif sample_date.tzinfo is None:
        sample_date = sample_date.replace(tzinfo=tzinfo)
    else:
        sample_date = sample_date.astimezone(tzinfo)

    return sample_date.strftime("%Z")


def format_display_time(ts, tzinfo: Optional[ZoneInfo] = None) -> str:
    """HH:MM of a market timestamp, shifted into the display timezone when one is given."""
    stamp = to_market_time(ts)
    if tzinfo is not None:
        stamp = stamp.tz_convert(tzinfo)
    return stamp.strftime("%H:%M")
