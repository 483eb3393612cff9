"""
Configuration utilities for the pattern backtester

Provides utilities for loading config.json, overriding values from the
command line (dotted keys reach nested sections, e.g.
llm_confirmation_screen.num_calls=5) and validating the merged dict into the
typed BacktestConfig the orchestrator consumes.
"""

import copy
import datetime
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from errors import ConfigError, Result
from patterns import ResolvedPattern, get_entry_pattern

DIRECTIONS = ("long", "short", "llm_decides")
TIMEFRAMES = ("1min", "5min")
EXIT_STRATEGY_NAMES = ("stopLoss", "profitTarget", "trailingStop", "maxHoldTime", "endOfDay")
SLIPPAGE_MODELS = ("percent", "fixed")
LLM_PROVIDERS = ("anthropic",)

DEFAULT_PROMPT = (
    "You are an experienced day trader. Review this intraday chart. The last visible "
    "bar is the signal bar; everything after it is hidden. Decide whether to enter a "
    "trade now and in which direction."
)

DEFAULT_JSON_SUFFIX = (
    " Respond only with JSON: {\"action\": \"long\" | \"short\" | \"do_nothing\", "
    "\"rationalization\": \"<one or two sentences>\", \"proposedStopLoss\": <price>, "
    "\"proposedProfitTarget\": <price>, \"confidence\": <1-5>}"
)

_HHMM_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

DEFAULT_CONFIG: Dict[str, Any] = {
    "ticker": "SPY",
    "timeframe": "1min",
    "direction": "long",
    "from": "2023-01-01",
    "to": "2023-12-31",
    "entry_pattern": "quick-rise",
    "timezone": "ET",
    "data_dir": "tickers",
    "cache_dir": "cache",
    "patterns": {},
    "charts": {"generate": False, "output_dir": "charts"},
    "exit_strategies": {
        "enabled": ["maxHoldTime"],
        "strategy_options": {"maxHoldTime": {"minutes": 60}},
    },
    "llm_confirmation_screen": {"enabled": False},
}


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from config.json

    Args:
        config_path: Path to config.json (default: same directory as this file)

    Returns:
        Dict with configuration values
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.json"
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in {config_path}: {exc}", path=str(config_path)) from exc
    else:
        # Default config if file doesn't exist
        return copy.deepcopy(DEFAULT_CONFIG)


def parse_config_value(value: str) -> Any:
    """
    Parse a config value string to appropriate Python type

    Args:
        value: String value to parse

    Returns:
        Parsed value (bool, int, float, or str)
    """
    value = value.strip()

    # Boolean
    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    # Number (int or float)
    if value.replace(".", "", 1).lstrip("-").isdigit():
        return float(value) if "." in value else int(value)

    # String
    return value


def _set_dotted(config: Dict[str, Any], key: str, value: Any) -> Any:
    """Assign config[a][b][c] for key 'a.b.c', creating sections as needed. Returns the old value."""
    parts = key.split(".")
    node = config
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    original = node.get(parts[-1])
    node[parts[-1]] = value
    return original


def apply_config_overrides(
    config: Dict[str, Any], overrides: List[str], verbose: bool = True
) -> Dict[str, Any]:
    """
    Apply command-line config overrides to a config dict

    Args:
        config: Configuration dict to modify (will be modified in-place)
        overrides: List of "KEY=VALUE" override strings
        verbose: If True, print override changes

    Returns:
        Modified config dict (same object as input)

    Example:
        >>> config = load_config()
        >>> overrides = ["direction=short", "llm_confirmation_screen.num_calls=5"]
        >>> apply_config_overrides(config, overrides)
    """
    if not overrides:
        return config

    if verbose:
        print("Applying config overrides:")

    for override in overrides:
        if "=" not in override:
            if verbose:
                print(f"  Warning: Invalid override format '{override}' (expected KEY=VALUE)")
            continue

        key, value = override.split("=", 1)
        key = key.strip()

        parsed_value = parse_config_value(value)
        original_value = _set_dotted(config, key, parsed_value)

        if verbose:
            print(f"  {key}: {original_value} -> {parsed_value}")

    if verbose:
        print()

    return config


def add_config_override_argument(parser):
    """
    Add --config-override argument to an ArgumentParser

    Args:
        parser: argparse.ArgumentParser instance
    """
    parser.add_argument(
        "--config-override",
        action="append",
        metavar="KEY=VALUE",
        help=(
            "Override config values (can be used multiple times). "
            "Format: KEY=VALUE. Boolean values: true/false. Dotted keys address nested sections. "
            "Examples: --config-override direction=short "
            "--config-override llm_confirmation_screen.num_calls=5"
        ),
    )


# ---------------------------------------------------------------------------
# Typed configuration
# ---------------------------------------------------------------------------


@dataclass
class PriceLevelOptions:
    """Stop loss / profit target placement. Priority: LLM price, ATR multiple, percent."""

    percent_from_entry: Optional[float] = None
    atr_multiplier: Optional[float] = None
    use_llm_proposed_price: bool = False


@dataclass
class TrailingStopOptions:
    activation_percent: Optional[float] = None
    activation_atr_multiplier: Optional[float] = None
    trail_percent: Optional[float] = None
    trail_atr_multiplier: Optional[float] = None


@dataclass
class SlippageOptions:
    model: str = "percent"
    value: float = 0.05


@dataclass
class ExitStrategiesConfig:
    enabled: List[str] = field(default_factory=lambda: ["maxHoldTime"])
    stop_loss: Optional[PriceLevelOptions] = None
    profit_target: Optional[PriceLevelOptions] = None
    trailing_stop: Optional[TrailingStopOptions] = None
    max_hold_minutes: Optional[int] = None
    end_of_day_time: Optional[str] = None
    slippage: Optional[SlippageOptions] = None


@dataclass
class ScreenConfig:
    enabled: bool = False
    llm_provider: str = "anthropic"
    model_name: str = "claude-3-7-sonnet-latest"
    api_key_env_var: str = "ANTHROPIC_API_KEY"
    num_calls: int = 3
    agreement_threshold: int = 2
    temperatures: List[float] = field(default_factory=lambda: [0.2, 0.5, 0.8])
    prompts: Union[str, List[str]] = DEFAULT_PROMPT
    common_prompt_suffix_for_json: str = DEFAULT_JSON_SUFFIX
    system_prompt: Optional[str] = None
    max_output_tokens: int = 150
    timeout_ms: Optional[int] = None
    bill_failed_calls: bool = True


@dataclass
class ChartOptions:
    generate: bool = False
    output_dir: str = "charts"
    suppress_sma: bool = False
    suppress_vwap: bool = False
    width: int = 1200
    height: int = 800


@dataclass
class BacktestConfig:
    ticker: str
    timeframe: str
    direction: str
    date_from: str
    date_to: str
    entry_pattern: ResolvedPattern
    exit_strategies: ExitStrategiesConfig = field(default_factory=ExitStrategiesConfig)
    screen: ScreenConfig = field(default_factory=ScreenConfig)
    charts: ChartOptions = field(default_factory=ChartOptions)
    timezone: str = "ET"
    data_dir: str = "tickers"
    cache_dir: str = "cache"
    debug: bool = False

    @property
    def pattern_name(self) -> str:
        return self.entry_pattern.name


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{key}' must be an object, got {type(value).__name__}")
    return value


def _optional_number(section: Dict[str, Any], key: str, where: str) -> Optional[float]:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}.{key} must be a number, got {value!r}")
    if value < 0:
        raise ConfigError(f"{where}.{key} must be >= 0, got {value!r}")
    return float(value)


def _parse_date(value: Any, key: str) -> str:
    try:
        return datetime.datetime.strptime(str(value), "%Y-%m-%d").strftime("%Y-%m-%d")
    except ValueError as exc:
        raise ConfigError(f"'{key}' must be a YYYY-MM-DD date, got {value!r}") from exc


def _parse_price_level(section: Dict[str, Any], where: str, default_percent: float) -> PriceLevelOptions:
    percent = _optional_number(section, "percent_from_entry", where)
    return PriceLevelOptions(
        percent_from_entry=default_percent if percent is None else percent,
        atr_multiplier=_optional_number(section, "atr_multiplier", where),
        use_llm_proposed_price=bool(section.get("use_llm_proposed_price", False)),
    )


def _parse_trailing_stop(section: Dict[str, Any]) -> TrailingStopOptions:
    where = "exit_strategies.strategy_options.trailingStop"
    options = TrailingStopOptions(
        activation_percent=_optional_number(section, "activation_percent", where),
        activation_atr_multiplier=_optional_number(section, "activation_atr_multiplier", where),
        trail_percent=_optional_number(section, "trail_percent", where),
        trail_atr_multiplier=_optional_number(section, "trail_atr_multiplier", where),
    )
    if options.trail_percent is None and options.trail_atr_multiplier is None:
        raise ConfigError(f"{where} needs trail_percent or trail_atr_multiplier")
    return options


def parse_exit_strategies(raw: Dict[str, Any]) -> ExitStrategiesConfig:
    section = _section(raw, "exit_strategies")
    enabled = section.get("enabled", ["maxHoldTime"])
    if not isinstance(enabled, list):
        raise ConfigError("exit_strategies.enabled must be a list of strategy names")
    unknown = [name for name in enabled if name not in EXIT_STRATEGY_NAMES]
    if unknown:
        raise ConfigError(
            f"Unknown exit strategy: {', '.join(map(str, unknown))}. "
            f"Available: {', '.join(EXIT_STRATEGY_NAMES)}"
        )

    options = _section(section, "strategy_options")
    missing = [name for name in enabled if not isinstance(options.get(name), dict)]
    if missing:
        raise ConfigError(
            f"Exit strategy enabled without configuration: {', '.join(missing)} "
            "(add exit_strategies.strategy_options.<name>)"
        )

    config = ExitStrategiesConfig(enabled=list(enabled))
    if "stopLoss" in enabled:
        config.stop_loss = _parse_price_level(options["stopLoss"], "exit_strategies.strategy_options.stopLoss", 1.0)
    if "profitTarget" in enabled:
        config.profit_target = _parse_price_level(
            options["profitTarget"], "exit_strategies.strategy_options.profitTarget", 2.0
        )
    if "trailingStop" in enabled:
        config.trailing_stop = _parse_trailing_stop(options["trailingStop"])
    if "maxHoldTime" in enabled:
        minutes = options["maxHoldTime"].get("minutes", 60)
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ConfigError(f"maxHoldTime.minutes must be a positive integer, got {minutes!r}")
        config.max_hold_minutes = minutes
    if "endOfDay" in enabled:
        time_str = str(options["endOfDay"].get("time", "16:00"))
        if not _HHMM_RE.match(time_str):
            raise ConfigError(f"endOfDay.time must be HH:MM, got {time_str!r}")
        config.end_of_day_time = time_str

    slippage = section.get("slippage")
    if slippage is not None:
        if not isinstance(slippage, dict):
            raise ConfigError("exit_strategies.slippage must be an object")
        model = slippage.get("model", "percent")
        if model not in SLIPPAGE_MODELS:
            raise ConfigError(f"slippage.model must be one of {', '.join(SLIPPAGE_MODELS)}, got {model!r}")
        value = _optional_number(slippage, "value", "exit_strategies.slippage")
        config.slippage = SlippageOptions(model=model, value=0.05 if value is None else value)
    return config


def parse_screen_config(raw: Dict[str, Any]) -> ScreenConfig:
    section = _section(raw, "llm_confirmation_screen")
    defaults = ScreenConfig()
    known = set(ScreenConfig.__dataclass_fields__)
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigError(f"Unknown llm_confirmation_screen option(s): {', '.join(unknown)}")
    values = {name: section.get(name, getattr(defaults, name)) for name in known}
    screen = ScreenConfig(**values)

    if screen.llm_provider not in LLM_PROVIDERS:
        raise ConfigError(f"llm_provider must be one of {', '.join(LLM_PROVIDERS)}, got {screen.llm_provider!r}")
    if isinstance(screen.num_calls, bool) or not isinstance(screen.num_calls, int) or screen.num_calls < 1:
        raise ConfigError(f"num_calls must be an integer >= 1, got {screen.num_calls!r}")
    threshold = screen.agreement_threshold
    if isinstance(threshold, bool) or not isinstance(threshold, int) or not 1 <= threshold <= screen.num_calls:
        raise ConfigError(
            f"agreement_threshold must be between 1 and num_calls ({screen.num_calls}), got {threshold!r}"
        )
    if not isinstance(screen.temperatures, list) or not screen.temperatures:
        raise ConfigError("temperatures must be a non-empty list")
    for temp in screen.temperatures:
        if isinstance(temp, bool) or not isinstance(temp, (int, float)) or not 0 <= temp <= 1:
            raise ConfigError(f"temperatures must be numbers in [0, 1], got {temp!r}")
    if screen.timeout_ms is not None and (not isinstance(screen.timeout_ms, (int, float)) or screen.timeout_ms <= 0):
        raise ConfigError(f"timeout_ms must be > 0, got {screen.timeout_ms!r}")
    return screen


def parse_chart_options(raw: Dict[str, Any]) -> ChartOptions:
    section = _section(raw, "charts")
    defaults = ChartOptions()
    return ChartOptions(
        generate=bool(section.get("generate", defaults.generate)),
        output_dir=str(section.get("output_dir", defaults.output_dir)),
        suppress_sma=bool(section.get("suppress_sma", defaults.suppress_sma)),
        suppress_vwap=bool(section.get("suppress_vwap", defaults.suppress_vwap)),
        width=int(section.get("width", defaults.width)),
        height=int(section.get("height", defaults.height)),
    )


def _build_backtest_config(raw: Dict[str, Any]) -> BacktestConfig:
    ticker = str(raw.get("ticker") or "").strip().upper()
    if not ticker:
        raise ConfigError("ticker is required")

    timeframe = raw.get("timeframe", "1min")
    if timeframe not in TIMEFRAMES:
        raise ConfigError(f"timeframe must be one of {', '.join(TIMEFRAMES)}, got {timeframe!r}")

    date_from = _parse_date(raw.get("from"), "from")
    date_to = _parse_date(raw.get("to"), "to")
    if date_from > date_to:
        raise ConfigError(f"'from' ({date_from}) must not be after 'to' ({date_to})")

    pattern_name = raw.get("entry_pattern", "quick-rise")
    pattern_options = _section(raw, "patterns").get(pattern_name)
    pattern = get_entry_pattern(pattern_name, pattern_options).unwrap()

    screen = parse_screen_config(raw)
    direction = raw.get("direction") or pattern.direction
    if direction not in DIRECTIONS:
        raise ConfigError(f"direction must be one of {', '.join(DIRECTIONS)}, got {direction!r}")
    if direction == "llm_decides" and not screen.enabled:
        raise ConfigError("direction 'llm_decides' requires llm_confirmation_screen.enabled=true")

    return BacktestConfig(
        ticker=ticker,
        timeframe=timeframe,
        direction=direction,
        date_from=date_from,
        date_to=date_to,
        entry_pattern=pattern,
        exit_strategies=parse_exit_strategies(raw),
        screen=screen,
        charts=parse_chart_options(raw),
        timezone=str(raw.get("timezone", "ET")),
        data_dir=str(raw.get("data_dir", "tickers")),
        cache_dir=str(raw.get("cache_dir", "cache")),
        debug=bool(raw.get("debug", False)),
    )


def parse_backtest_config(raw: Dict[str, Any]) -> Result[BacktestConfig]:
    """Validate a merged config dict. Never raises for invalid input; the caller decides."""
    try:
        return Result.success(_build_backtest_config(raw))
    except ConfigError as exc:
        return Result.failure(exc)
