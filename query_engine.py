"""
Query execution adapter for DuckDB

All pattern detection runs as SQL over the per-ticker minute CSV
(tickers/<TICKER>/<timeframe>.csv, headerless: timestamp, open, high, low,
close, volume). Queries are piped to the duckdb CLI and the CSV result is
parsed back into plain row mappings {column: str | int | float}.
"""

from __future__ import annotations

import io
import logging
import subprocess
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from errors import QueryExecutionError

logger = logging.getLogger(__name__)

Row = Dict[str, Union[str, int, float]]

DUCKDB_COMMAND = ["duckdb", "-csv", "-header"]
DEFAULT_DATA_DIR = "tickers"

# Price-like columns are rounded to 4 decimals to drop float noise from CSV round trips
PRICE_COLUMNS = {"open", "high", "low", "close", "price", "entry_price", "exit_price", "market_open"}


def _coerce_cell(column: str, value) -> Union[str, int, float]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ""
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if column.strip().lower() in PRICE_COLUMNS:
            return round(float(value), 4)
        return value
    return str(value)


def parse_csv_rows(text: str) -> List[Row]:
    """Parse duckdb ``-csv -header`` output into row mappings."""
    if not text or not text.strip():
        return []
    df = pd.read_csv(io.StringIO(text), skip_blank_lines=True)
    df.columns = [str(c).strip() for c in df.columns]
    rows: List[Row] = []
    for record in df.to_dict("records"):
        rows.append({col: _coerce_cell(col, val) for col, val in record.items()})
    return rows


def fetch_rows_from_query(sql: str, timeout: Optional[float] = None, **context) -> List[Row]:
    """
    Run a complete SQL statement through the duckdb CLI.

    Args:
        sql: Query text, passed on stdin
        timeout: Optional wall-clock limit in seconds
        **context: ticker / date_range / pattern, attached to any raised error

    Returns:
        List of row mappings (empty when the query yields no rows)

    Raises:
        QueryExecutionError: binary missing, non-zero exit, timeout, or unparseable output
    """
    try:
        completed = subprocess.run(
            DUCKDB_COMMAND,
            input=sql,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise QueryExecutionError("duckdb executable not found on PATH", **context) from exc
    except subprocess.TimeoutExpired as exc:
        raise QueryExecutionError(f"duckdb query timed out after {timeout}s", **context) from exc

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        raise QueryExecutionError(
            f"duckdb exited with status {completed.returncode}: {stderr}", **context
        )

    try:
        rows = parse_csv_rows(completed.stdout)
    except (pd.errors.ParserError, ValueError) as exc:
        raise QueryExecutionError(f"Could not parse duckdb output: {exc}", **context) from exc

    logger.debug("Query returned %d rows", len(rows))
    return rows


def data_file_path(ticker: str, timeframe: str, data_dir: str = DEFAULT_DATA_DIR) -> str:
    return f"{data_dir}/{ticker}/{timeframe}.csv"


def _raw_data_cte(csv_path: str, start: str, end: str) -> str:
    return f"""raw_data AS (
      SELECT
        column0::TIMESTAMP AS timestamp,
        column1::DOUBLE AS open,
        column2::DOUBLE AS high,
        column3::DOUBLE AS low,
        column4::DOUBLE AS close,
        column5::BIGINT AS volume,
        strftime(column0::TIMESTAMP, '%Y-%m-%d') AS trade_date,
        strftime(column0::TIMESTAMP, '%Y') AS year,
        strftime(column0::TIMESTAMP, '%H:%M') AS bar_time
      FROM read_csv_auto('{csv_path}', header=false)
      WHERE column0::TIMESTAMP >= TIMESTAMP '{start} 00:00:00'
        AND column0::TIMESTAMP <= TIMESTAMP '{end} 23:59:59'
    )"""


def build_analysis_query(
    ticker: str,
    timeframe: str,
    date_from: str,
    date_to: str,
    pattern_fragment: str,
    data_dir: str = DEFAULT_DATA_DIR,
) -> str:
    """
    Wrap a pattern's SQL fragment into the full candidate query.

    The fragment is embedded verbatim as the ``pattern_matches`` CTE. It may read
    ``raw_data``, ``session_bars`` and ``market_open_prices`` and must yield
    trade_date, year, market_open, entry_time, entry_price, rise_pct, direction.
    """
    csv_path = data_file_path(ticker, timeframe, data_dir)
    return f"""
    WITH {_raw_data_cte(csv_path, date_from, date_to)},
    session_bars AS (
      SELECT * FROM raw_data
      WHERE bar_time >= '09:30' AND bar_time <= '16:00'
    ),
    trading_days AS (
      SELECT year, COUNT(DISTINCT trade_date) AS total_trading_days
      FROM session_bars
      WHERE bar_time = '09:30'
        AND strftime(timestamp, '%w') NOT IN ('0', '6')
      GROUP BY year
    ),
    market_open_prices AS (
      SELECT trade_date, year, open AS market_open, timestamp AS market_open_time
      FROM session_bars
      WHERE bar_time = '09:30'
    ),
    pattern_matches AS (
      {pattern_fragment.strip()}
    )
    SELECT
      p.trade_date,
      p.year,
      p.market_open,
      strftime(p.entry_time, '%Y-%m-%d %H:%M:%S') AS entry_time,
      p.entry_price,
      p.rise_pct,
      p.direction,
      t.total_trading_days
    FROM pattern_matches p
    JOIN trading_days t ON p.year = t.year
    ORDER BY p.trade_date, p.entry_time;
    """


def build_trading_days_query(
    ticker: str, timeframe: str, date_from: str, date_to: str, data_dir: str = DEFAULT_DATA_DIR
) -> str:
    csv_path = data_file_path(ticker, timeframe, data_dir)
    return f"""
    WITH {_raw_data_cte(csv_path, date_from, date_to)}
    SELECT year, COUNT(DISTINCT trade_date) AS total_trading_days
    FROM raw_data
    WHERE bar_time = '09:30'
      AND strftime(timestamp, '%w') NOT IN ('0', '6')
    GROUP BY year
    ORDER BY year;
    """


def build_bars_query(
    ticker: str, timeframe: str, date_from: str, date_to: str, data_dir: str = DEFAULT_DATA_DIR
) -> str:
    """All bars (extended hours included) between two dates, ascending."""
    csv_path = data_file_path(ticker, timeframe, data_dir)
    return f"""
    WITH {_raw_data_cte(csv_path, date_from, date_to)}
    SELECT
      strftime(timestamp, '%Y-%m-%d %H:%M:%S') AS timestamp,
      open, high, low, close, volume
    FROM raw_data
    ORDER BY timestamp ASC;
    """


def build_daily_bars_query(
    ticker: str,
    timeframe: str,
    before_date: str,
    days: int = 20,
    data_dir: str = DEFAULT_DATA_DIR,
) -> str:
    """Regular-session daily bars for the `days` most recent trading days before `before_date`."""
    csv_path = data_file_path(ticker, timeframe, data_dir)
    return f"""
    WITH session AS (
      SELECT
        column0::TIMESTAMP AS timestamp,
        column1::DOUBLE AS open,
        column2::DOUBLE AS high,
        column3::DOUBLE AS low,
        column4::DOUBLE AS close,
        column5::BIGINT AS volume,
        strftime(column0::TIMESTAMP, '%Y-%m-%d') AS trade_date
      FROM read_csv_auto('{csv_path}', header=false)
      WHERE column0::TIMESTAMP < TIMESTAMP '{before_date} 00:00:00'
        AND strftime(column0::TIMESTAMP, '%H:%M') BETWEEN '09:30' AND '16:00'
    ),
    daily AS (
      SELECT
        trade_date,
        arg_min(open, timestamp) AS open,
        MAX(high) AS high,
        MIN(low) AS low,
        arg_max(close, timestamp) AS close,
        SUM(volume) AS volume
      FROM session
      GROUP BY trade_date
      ORDER BY trade_date DESC
      LIMIT {int(days)}
    )
    SELECT trade_date AS timestamp, open, high, low, close, volume
    FROM daily
    ORDER BY trade_date ASC;
    """
