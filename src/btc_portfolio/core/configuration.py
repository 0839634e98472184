"""Editable settings exposed by ``/api/config``.

Updates are validated per field, written back to ``config.yaml`` and mirrored
into ``os.environ``. Keys that came from the shell or ``.env`` stay read-only.
"""
import os
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from btc_portfolio.core import settings
from btc_portfolio.logger import get_logger

logger = get_logger(__name__)

ValueType = Literal["string", "int", "float", "decimal", "bool", "currency"]


@dataclass(frozen=True)
class ConfigField:
    key: str
    description: str
    value_type: ValueType = "string"
    min_value: float | None = None
    options: tuple[str, ...] | None = None
    restart_required: bool = False


CONFIG_FIELDS: tuple[ConfigField, ...] = (
    ConfigField("MAIN_CURRENCY", "Reporting currency for portfolio values.", "currency"),
    ConfigField("SECONDARY_CURRENCY", "Extra currency the BTC price is shown in.", "currency"),
    ConfigField("FALLBACK_BTC_PRICE", "USD price used when the feed has nothing.", "decimal"),
    ConfigField("PRICE_FEED_URL", "CoinGecko-compatible simple/price endpoint."),
    ConfigField("PRICE_CACHE_TTL", "Seconds a BTC quote is reused.", "float", min_value=0),
    ConfigField("EXCHANGE_RATE_URL", "Base URL answering /<BASE> with a rates table."),
    ConfigField("EXCHANGE_RATE_TTL", "Seconds a rates table is reused.", "float", min_value=0),
    ConfigField("SCHEDULER_ENABLED", "Run recurring plans automatically.", "bool", restart_required=True),
    ConfigField("SCHEDULER_INTERVAL_SECONDS", "Seconds between scheduler checks.", "int", min_value=1),
    ConfigField("AUTO_DCA_TAGS", "Tags added to scheduler-created transactions."),
    ConfigField("DATA_DIR", "Directory holding ledger.json.", restart_required=True),
    ConfigField("LOG_DIR", "Directory for app.log.", restart_required=True),
    ConfigField(
        "LOG_LEVEL",
        "Application log level.",
        options=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        restart_required=True,
    ),
)

_FIELDS_BY_KEY = {field.key: field for field in CONFIG_FIELDS}

_NUMBER_PARSERS: dict[str, tuple[Callable[[str], Any], str]] = {
    "int": (int, "Must be a whole number."),
    "float": (float, "Must be a number."),
    "decimal": (Decimal, "Must be a number."),
}


def get_config_path() -> str:
    return settings.get_config_path() or os.path.join(os.getcwd(), settings.CONFIG_FILENAME)


def build_config_context(*, field_errors: dict[str, str] | None = None) -> dict[str, Any]:
    file_values = settings.read_config_file(get_config_path())
    fields = []
    for field in CONFIG_FIELDS:
        locked = settings.is_env_override(field.key)
        fields.append({
            "key": field.key,
            "description": field.description,
            "value_type": field.value_type,
            "options": field.options,
            "value": os.getenv(field.key, "") if locked else file_values.get(field.key, ""),
            "env_override": locked,
            "restart_required": field.restart_required,
            "error": (field_errors or {}).get(field.key),
        })
    return {
        "config_path": get_config_path(),
        "fields": fields,
        "env_override_count": sum(1 for item in fields if item["env_override"]),
    }


def _validate_value(field: ConfigField, raw_value: str) -> tuple[str, str | None]:
    value = raw_value.strip()
    if not value:
        return "", None
    if len(value.splitlines()) > 1:
        return value, "Value must be a single line."

    if field.options:
        choice = value.upper()
        if choice in field.options:
            return choice, None
        return value, f"Must be one of: {', '.join(field.options)}."

    if field.value_type == "currency":
        code = value.upper()
        if len(code) == 3 and code.isalpha():
            return code, None
        return value, "Must be a three-letter currency code."

    if field.value_type == "bool":
        flag = value.lower()
        if flag in settings.TRUE_VALUES | settings.FALSE_VALUES:
            return flag, None
        return value, "Must be true or false."

    if field.value_type in _NUMBER_PARSERS:
        parse, message = _NUMBER_PARSERS[field.value_type]
        try:
            number = parse(value)
        except (ValueError, InvalidOperation):
            return value, message
        if field.value_type == "decimal" and not (number.is_finite() and number > 0):
            return value, "Must be greater than 0."
        if field.min_value is not None and number < field.min_value:
            return value, f"Must be at least {field.min_value}."
        return value if field.value_type == "decimal" else str(number), None

    return value, None


def apply_config_updates(form_values: dict[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """Validate, persist and apply updates. Returns ``(errors, applied)``."""
    errors: dict[str, str] = {}
    updates: dict[str, str] = {}
    for key, raw_value in form_values.items():
        field = _FIELDS_BY_KEY.get(key)
        if field is None:
            errors[key] = "Unknown setting."
        elif settings.is_env_override(key):
            errors[key] = "Set via environment variable."
        else:
            cleaned, error = _validate_value(field, str(raw_value))
            if error:
                errors[key] = error
            else:
                updates[key] = cleaned
    if errors:
        return errors, {}

    _write_config_file(updates)
    for key, value in updates.items():
        if value:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)
    logger.info("[CONFIG] Updated %s", ", ".join(sorted(updates)) or "nothing")
    return {}, updates


def _quote(value: str) -> str:
    if value == value.strip() and not any(marker in value for marker in ":#\"'"):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _write_config_file(updates: dict[str, str]) -> None:
    """Rewrite the whole file from the field list, keeping unknown keys at the end."""
    path = get_config_path()
    values = {**settings.read_config_file(path), **updates}

    lines = [
        "# BTC portfolio engine configuration",
        "# Environment variables with the same name take precedence.",
    ]
    for field in CONFIG_FIELDS:
        value = values.pop(field.key, "")
        lines += ["", f"# {field.description}", f"{field.key}: {_quote(value)}" if value else f"# {field.key}:"]
    if values:
        lines.append("")
        lines += [f"{key}: {_quote(value)}" for key, value in values.items() if value]

    if os.path.dirname(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")


def _refresh_scheduler(scheduler: Any) -> None:
    scheduler.interval_seconds = settings.get_scheduler_interval()
    scheduler.auto_tags = settings.get_auto_dca_tags()
    logger.info("[CONFIG] Scheduler now checks every %ss.", scheduler.interval_seconds)


def _refresh_client(client: Any) -> None:
    client.refresh()
    logger.info("[CONFIG] %s now uses %s.", type(client).__name__, client.url)


# app.state attribute -> keys that require it to reload, and how.
_RUNTIME_TARGETS: tuple[tuple[str, frozenset[str], Callable[[Any], None]], ...] = (
    ("price_feed", frozenset({"PRICE_FEED_URL", "PRICE_CACHE_TTL"}), _refresh_client),
    ("exchange_rates", frozenset({"EXCHANGE_RATE_URL", "EXCHANGE_RATE_TTL"}), _refresh_client),
    ("scheduler", frozenset({"SCHEDULER_INTERVAL_SECONDS", "AUTO_DCA_TAGS"}), _refresh_scheduler),
)


def apply_runtime_updates(app: Any, updates: dict[str, str]) -> None:
    state = getattr(app, "state", None)
    if not updates or state is None:
        return
    for attribute, keys, refresh in _RUNTIME_TARGETS:
        target = getattr(state, attribute, None)
        if target is not None and keys & updates.keys():
            refresh(target)
