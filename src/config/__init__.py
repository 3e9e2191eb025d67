"""
Configuration loaders.

App config:   reads config.yaml, RECON_STORE_PATH env override.
Recon rules:  reads recon.default.json (plus optional override), validates against JSON Schema.
"""

from config.loader import (
    AlertingConfig,
    AppConfig,
    JournalConfig,
    ReconcileConfig,
    StoreConfig,
    load_config,
)
from config.recon_rules import (
    HoldingConfig,
    PnlConfig,
    PriceBounds,
    ReconRules,
    ReconRulesError,
    SessionConfig,
    load_recon_rules,
)

__all__ = [
    # App config (YAML)
    "AlertingConfig",
    "AppConfig",
    "JournalConfig",
    "ReconcileConfig",
    "StoreConfig",
    "load_config",
    # Recon rules (JSON + schema)
    "HoldingConfig",
    "PnlConfig",
    "PriceBounds",
    "ReconRules",
    "ReconRulesError",
    "SessionConfig",
    "load_recon_rules",
]
