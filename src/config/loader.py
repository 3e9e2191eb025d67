"""
Config loader: YAML file -> frozen dataclass tree.

The store path can be overridden with the RECON_STORE_PATH environment
variable (e.g. from a .env file in deployments).
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass(frozen=True)
class StoreConfig:
    path: str = "data/recon.db"
    busy_timeout: float = 10.0


@dataclass(frozen=True)
class ReconcileConfig:
    max_workers: int = 1
    rules_override: str = ""


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class AppConfig:
    store: StoreConfig
    reconcile: ReconcileConfig
    journal: JournalConfig
    alerting: AlertingConfig = AlertingConfig()


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    Environment overrides:
      - RECON_STORE_PATH: replaces store.path
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    st_raw = raw.get("store", {})
    st_cfg = StoreConfig(
        path=os.environ.get("RECON_STORE_PATH") or st_raw.get("path", "data/recon.db"),
        busy_timeout=float(st_raw.get("busy_timeout", 10.0)),
    )

    rc_raw = raw.get("reconcile", {})
    rc_cfg = ReconcileConfig(
        max_workers=int(rc_raw.get("max_workers", 1)),
        rules_override=str(rc_raw.get("rules_override", "") or ""),
    )
    if rc_cfg.max_workers < 1:
        raise ValueError(f"reconcile.max_workers must be >= 1, got {rc_cfg.max_workers}")

    j_raw = raw.get("journal", {})
    j_cfg = JournalConfig(
        path=j_raw.get("path", "data/journal.jsonl"),
        echo_stdout=bool(j_raw.get("echo_stdout", False)),
    )

    a_raw = raw.get("alerting", {})
    a_cfg = AlertingConfig(
        structured_logs=bool(a_raw.get("structured_logs", True)),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    return AppConfig(
        store=st_cfg,
        reconcile=rc_cfg,
        journal=j_cfg,
        alerting=a_cfg,
    )
