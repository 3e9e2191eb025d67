"""
Reconciliation rules loader: JSON file -> frozen dataclass tree, validated against JSON Schema.

Default values: docs/config/recon.default.json
Schema:         docs/config/recon_config.schema.json

An optional override file holds only the keys to change; it is deep-merged on
top of the base rules before schema validation.

Usage:
    from config.recon_rules import load_recon_rules
    rules = load_recon_rules()                          # loads default
    rules = load_recon_rules(override_path="ops.json")  # merges overrides
    rules.prices.max_price  # -> Decimal("1000000")
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import time
from decimal import Decimal
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema

logger = logging.getLogger("recon.config")

# ---------------------------------------------------------------------------
# Project root detection (walk up from this file to find pyproject.toml)
# ---------------------------------------------------------------------------


def _find_project_root() -> Path:
    """Walk up from this file looking for pyproject.toml.

    When installed as a package pyproject.toml won't exist; fall back to CWD.
    """
    candidate = Path(__file__).resolve().parent
    for _ in range(10):
        if (candidate / "pyproject.toml").exists():
            return candidate
        parent = candidate.parent
        if parent == candidate:
            break
        candidate = parent
    return Path.cwd()


_PROJECT_ROOT = _find_project_root()

DEFAULT_RULES_PATH = _PROJECT_ROOT / "docs" / "config" / "recon.default.json"
DEFAULT_SCHEMA_PATH = _PROJECT_ROOT / "docs" / "config" / "recon_config.schema.json"


# ---------------------------------------------------------------------------
# Frozen dataclass tree (mirrors recon.default.json structure)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceBounds:
    min_price: Decimal = Decimal("0")
    max_price: Decimal = Decimal("1000000")


@dataclass(frozen=True)
class PnlConfig:
    places: int | None = 2      # None = no rounding
    rounding: str = "ROUND_HALF_UP"


@dataclass(frozen=True)
class SessionConfig:
    timezone: str = "America/New_York"
    regular_open: time = time(9, 30)
    regular_close: time = time(16, 0)


@dataclass(frozen=True)
class HoldingConfig:
    swing_after_hours: float = 24.0


@dataclass(frozen=True)
class ReconRules:
    """Top-level reconciliation rules. Defaults match recon.default.json."""
    version: str = "1.0"
    prices: PriceBounds = PriceBounds()
    pnl: PnlConfig = PnlConfig()
    sessions: SessionConfig = SessionConfig()
    holding: HoldingConfig = HoldingConfig()


# ---------------------------------------------------------------------------
# Deep merge for overrides
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into a copy of *base* (override keys win)."""
    merged = dict(base)
    for key, val in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(val, dict):
            merged[key] = _deep_merge(merged[key], val)
        else:
            merged[key] = val
    return merged


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class ReconRulesError(Exception):
    """Raised when rules loading or validation fails."""


def _validate_schema(data: dict[str, Any], schema_path: Path) -> None:
    if not schema_path.exists():
        raise ReconRulesError(f"Schema file not found: {schema_path}")
    with open(schema_path) as f:
        schema = json.load(f)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        raise ReconRulesError(f"Recon rules validation failed: {exc.message}") from exc


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


def _build_rules(data: dict[str, Any]) -> ReconRules:
    """Convert a raw dict (already validated) into the frozen dataclass tree."""
    prices_raw = data["prices"]
    pnl_raw = data["pnl"]
    sessions_raw = data.get("sessions", {})
    holding_raw = data.get("holding", {})

    min_price = Decimal(str(prices_raw["min_price"]))
    max_price = Decimal(str(prices_raw["max_price"]))
    if max_price < min_price:
        raise ReconRulesError(f"prices.max_price ({max_price}) is below prices.min_price ({min_price})")

    regular_open = _parse_hhmm(sessions_raw.get("regular_open", "09:30"))
    regular_close = _parse_hhmm(sessions_raw.get("regular_close", "16:00"))
    if regular_close <= regular_open:
        raise ReconRulesError("sessions.regular_close must be after sessions.regular_open")

    tz_name = sessions_raw.get("timezone", "America/New_York")
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ReconRulesError(f"sessions.timezone {tz_name!r} is not a known IANA time zone") from exc

    return ReconRules(
        version=data["version"],
        prices=PriceBounds(min_price=min_price, max_price=max_price),
        pnl=PnlConfig(
            places=pnl_raw.get("places", 2),
            rounding=pnl_raw.get("rounding", "ROUND_HALF_UP"),
        ),
        sessions=SessionConfig(
            timezone=tz_name,
            regular_open=regular_open,
            regular_close=regular_close,
        ),
        holding=HoldingConfig(
            swing_after_hours=float(holding_raw.get("swing_after_hours", 24.0)),
        ),
    )


def _read_json(path: Path, label: str) -> dict[str, Any]:
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise ReconRulesError(f"{label} {path.name} is not valid JSON: {exc}") from exc


def load_recon_rules(
    rules_path: str | Path | None = None,
    schema_path: str | Path | None = None,
    override_path: str | Path | None = None,
) -> ReconRules:
    """Load and validate reconciliation rules.

    Parameters
    ----------
    rules_path:
        Path to a rules JSON file. Defaults to ``docs/config/recon.default.json``.
    schema_path:
        Path to the JSON Schema file. Defaults to ``docs/config/recon_config.schema.json``.
    override_path:
        Optional partial JSON file deep-merged on top of the base rules.
        A missing override file is an error (it was asked for explicitly).

    Raises
    ------
    ReconRulesError
        If a file is missing, unparseable, or fails schema validation.
    """
    base_path = Path(rules_path) if rules_path else DEFAULT_RULES_PATH
    sch_path = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH

    if not base_path.exists():
        raise ReconRulesError(f"Recon rules file not found: {base_path}")
    data = _read_json(base_path, "Recon rules")

    if override_path:
        ov_path = Path(override_path)
        if not ov_path.exists():
            raise ReconRulesError(f"Recon rules override not found: {ov_path}")
        data = _deep_merge(data, _read_json(ov_path, "Override"))
        logger.info("Loaded rules override: %s", ov_path.name)

    _validate_schema(data, sch_path)

    return _build_rules(data)
