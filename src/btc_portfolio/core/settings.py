"""Process configuration.

Values are resolved once at import: shell environment and ``.env`` first,
then ``config.yaml`` for keys that are still unset. The getters below read
``os.environ`` on every call so runtime updates from the config API apply
without a restart.
"""
import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TypeVar

from dotenv import find_dotenv, load_dotenv

from btc_portfolio.domain.tags import parse_tag_list
from btc_portfolio.logger import get_logger

logger = get_logger(__name__)

N = TypeVar("N", int, float, Decimal)

CONFIG_FILENAME = "config.yaml"
LEDGER_FILENAME = "ledger.json"

DEFAULT_MAIN_CURRENCY = "USD"
DEFAULT_SECONDARY_CURRENCY = "EUR"
DEFAULT_FALLBACK_BTC_PRICE = Decimal(100000)
DEFAULT_SCHEDULER_INTERVAL_SECONDS = 3600
DEFAULT_AUTO_DCA_TAGS = "DCA,Automatic"

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "MAIN_CURRENCY",
    "SECONDARY_CURRENCY",
    "PRICE_FEED_URL",
    "PRICE_CACHE_TTL",
    "EXCHANGE_RATE_URL",
    "EXCHANGE_RATE_TTL",
    "FALLBACK_BTC_PRICE",
    "SCHEDULER_ENABLED",
    "SCHEDULER_INTERVAL_SECONDS",
    "AUTO_DCA_TAGS",
)

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"0", "false", "no", "off"})

# A value wrapped in matching quotes, with backslash escapes inside.
_QUOTED_VALUE = re.compile(r"""(["'])((?:\\.|(?!\1).)*)\1""")
_ESCAPE = re.compile(r"\\(.)")

_CONFIG_FILE_PATH: str | None = None
_EXTERNAL_ENV_KEYS: set[str] = set()


def _config_value(raw_value: str) -> str:
    value = raw_value.strip()
    quoted = _QUOTED_VALUE.match(value)
    if quoted:
        return _ESCAPE.sub(r"\1", quoted.group(2))
    if value.startswith("#"):
        return ""
    return value.split(" #", 1)[0].rstrip()


def _parse_config_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if stripped.startswith("#") or ":" not in stripped:
        return None
    key, raw_value = (part.strip() for part in stripped.split(":", 1))
    value = _config_value(raw_value)
    if not key or not value:
        return None
    return key, value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read flat ``KEY: value`` lines, ignoring comments and blanks."""
    if not path or not os.path.exists(path):
        return {}
    with open(path, encoding="utf-8") as handle:
        return dict(filter(None, map(_parse_config_line, handle)))


def _config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    nested = os.path.join(os.getcwd(), "config", CONFIG_FILENAME)
    return nested if os.path.exists(nested) else os.path.join(os.getcwd(), CONFIG_FILENAME)


def load_environment() -> None:
    global _CONFIG_FILE_PATH, _EXTERNAL_ENV_KEYS

    config_dir = os.getenv("CONFIG_DIR")
    dotenv_path = os.path.join(config_dir, ".env") if config_dir else find_dotenv(usecwd=True)
    if dotenv_path and os.path.exists(dotenv_path):
        load_dotenv(dotenv_path=dotenv_path, override=False)

    # Shell and .env values are fixed; only config.yaml keys are editable.
    _EXTERNAL_ENV_KEYS = set(os.environ)
    _CONFIG_FILE_PATH = _config_path()
    file_values = read_config_file(_CONFIG_FILE_PATH)
    for key in _CONFIG_KEYS:
        if key in file_values:
            os.environ.setdefault(key, file_values[key])


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def is_env_override(name: str) -> bool:
    return name in _EXTERNAL_ENV_KEYS


def _get_env_number(
    name: str,
    default: N,
    parse: Callable[[str], N],
    min_value: N | None = None,
) -> N:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = parse(raw)
    except (ValueError, InvalidOperation):
        logger.warning("[ENV] %s='%s' is not a number, using %s.", name, raw, default)
        return default
    if min_value is not None and not value >= min_value:
        logger.warning("[ENV] %s=%s is below %s, using %s.", name, raw, min_value, default)
        return default
    return value


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    return _get_env_number(name, default, int, min_value)


def get_env_float(name: str, default: float, min_value: float | None = None) -> float:
    return _get_env_number(name, default, float, min_value)


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    if raw:
        logger.warning("[ENV] %s='%s' is not a boolean, using %s.", name, raw, default)
    return default


@dataclass(frozen=True)
class ReportingCurrencies:
    main: str
    secondary: str


def get_reporting_currencies() -> ReportingCurrencies:
    main = (os.getenv("MAIN_CURRENCY") or DEFAULT_MAIN_CURRENCY).strip().upper()
    secondary = (os.getenv("SECONDARY_CURRENCY") or DEFAULT_SECONDARY_CURRENCY).strip().upper()
    return ReportingCurrencies(main=main, secondary=secondary)


def get_fallback_btc_price() -> Decimal:
    price = _get_env_number("FALLBACK_BTC_PRICE", DEFAULT_FALLBACK_BTC_PRICE, Decimal)
    if not price.is_finite() or price <= 0:
        logger.warning("[ENV] FALLBACK_BTC_PRICE must be positive, using %s.", DEFAULT_FALLBACK_BTC_PRICE)
        return DEFAULT_FALLBACK_BTC_PRICE
    return price


def get_scheduler_interval() -> int:
    return get_env_int("SCHEDULER_INTERVAL_SECONDS", DEFAULT_SCHEDULER_INTERVAL_SECONDS, min_value=1)


def get_auto_dca_tags() -> list[str]:
    return parse_tag_list(os.getenv("AUTO_DCA_TAGS") or DEFAULT_AUTO_DCA_TAGS)


def log_environment() -> None:
    for key in _CONFIG_KEYS:
        value = os.getenv(key)
        if value and key.endswith("_URL"):
            # Feed URLs may carry an API key in the query string.
            value = value.split("?", 1)[0]
        logger.info("[ENV] %s=%s", key, "<unset>" if value is None else value)


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

for _path in (DATA_DIR, LOG_DIR, CONFIG_DIR):
    if _path and _path not in {".", "./"}:
        os.makedirs(_path, exist_ok=True)
