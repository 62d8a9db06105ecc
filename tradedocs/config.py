"""
tradedocs -- Configuration Module

Centralizes runtime configuration for the document lifecycle core.
Loads defaults from dataclasses, then overlays any overrides from a YAML file.

Usage:
    from tradedocs.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.reminders.tiers)                 # [7, 14, 30]
    print(cfg.delivery.channel_timeout_seconds)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .models import ReminderTone

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # tradedocs/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
PACKAGE_TEMPLATE_DIR = _THIS_DIR / "templates"


# ===================================================================
# 1. Reminder Defaults
# ===================================================================

@dataclass
class ReminderDefaults:
    """Fallbacks used when a business has no reminder settings of its own."""
    enabled: bool = True
    tiers: list[int] = field(default_factory=lambda: [7, 14, 30])
    tone: str = "friendly"
    sms_enabled: bool = False
    attach_invoice: bool = True
    fallback_business_name: str = "Your Service Provider"


# ===================================================================
# 2. Delivery
# ===================================================================

@dataclass
class DeliverySettings:
    """Channel behaviour shared by every send."""
    channel_timeout_seconds: float = 30.0
    allow_without_attachment: bool = False
    send_claim_ttl_seconds: int = 300


# ===================================================================
# 3. SMTP Defaults
# ===================================================================

@dataclass
class SMTPSettings:
    """Defaults applied to a business email connection that leaves fields blank."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


# ===================================================================
# 4. Contact Rules
# ===================================================================

@dataclass
class ContactRules:
    """National mobile number rules used before any SMS is attempted."""
    mobile_pattern: str = r"^(04\d{8}|614\d{8})$"
    country_code: str = "61"
    trunk_prefix: str = "0"


# ===================================================================
# 5. Template Paths
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the Jinja2 templates live.  Empty means the packaged set."""
    template_dir: str = ""

    @property
    def resolved_dir(self) -> Path:
        if not self.template_dir:
            return PACKAGE_TEMPLATE_DIR
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 6. Storage / Output Paths
# ===================================================================

@dataclass
class StoragePaths:
    """Local paths for the SQLite store, rendered artifacts and .eml drafts."""
    db_path: str = "output/tradedocs.db"
    artifact_dir: str = "output/artifacts"
    drafts_dir: str = "output/drafts"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 7. Logging
# ===================================================================

@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: str = ""
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    datefmt: str = "%H:%M:%S"

    def __post_init__(self):
        self.level = os.environ.get("TRADEDOCS_LOG_LEVEL", self.level)


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class TradeDocsConfig:
    """Top-level configuration container."""
    reminders: ReminderDefaults = field(default_factory=ReminderDefaults)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    contacts: ContactRules = field(default_factory=ContactRules)
    template_paths: TemplatePaths = field(default_factory=TemplatePaths)
    storage: StoragePaths = field(default_factory=StoragePaths)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: TradeDocsConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a TradeDocsConfig instance."""
    _section_map = {
        "reminders": cfg.reminders,
        "delivery": cfg.delivery,
        "smtp": cfg.smtp,
        "contacts": cfg.contacts,
        "template_paths": cfg.template_paths,
        "storage": cfg.storage,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)

    # Tiers must stay sorted ascending for the escalation lookup.
    cfg.reminders.tiers = sorted(int(t) for t in cfg.reminders.tiers)
    cfg.reminders.tone = str(cfg.reminders.tone).strip().lower()
    if cfg.reminders.tone not in {t.value for t in ReminderTone}:
        raise ValueError(
            f"reminders.tone must be one of friendly, professional, firm (got {cfg.reminders.tone!r})"
        )
    cfg.logging.level = os.environ.get("TRADEDOCS_LOG_LEVEL", cfg.logging.level)


def get_config(yaml_path: Optional[str | Path] = None) -> TradeDocsConfig:
    """Build a TradeDocsConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a YAML config file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated TradeDocsConfig instance.
    """
    cfg = TradeDocsConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg


if __name__ == "__main__":
    cfg = get_config()
    print(f"Project root : {PROJECT_ROOT}")
    print(f"Config path  : {DEFAULT_CONFIG_PATH}")
    print(f"Templates    : {cfg.template_paths.resolved_dir}")
    print(f"Database     : {cfg.storage.resolve(cfg.storage.db_path)}")
    print(f"Tiers        : {cfg.reminders.tiers} ({cfg.reminders.tone})")
    print(f"Timeout      : {cfg.delivery.channel_timeout_seconds}s")
