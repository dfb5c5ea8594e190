"""
Debitorenportal -- Configuration Module

Centralizes all configuration for the dunning core.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from debitorenportal.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.interest.fallback_base_rate)     # Decimal('2.82')
    print(cfg.company.name)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

from .formatting import to_decimal
from .models import CompanySettings

# ---------------------------------------------------------------------------
# Path constants
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # debitorenportal/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_TEMPLATE_DIR = _THIS_DIR / "templates"


# ===================================================================
# 1. Statutory interest
# ===================================================================

@dataclass
class InterestSettings:
    """Base rate fallback and statutory margins (percentage points).

    The published base rate normally comes from the settings collaborator;
    ``fallback_base_rate`` is used when none is supplied.
    """
    fallback_base_rate: Decimal = Decimal("2.82")
    consumer_margin: Decimal = Decimal("5")
    business_margin: Decimal = Decimal("9")
    days_per_year: int = 365

    def __post_init__(self):
        self.fallback_base_rate = to_decimal(self.fallback_base_rate)
        self.consumer_margin = to_decimal(self.consumer_margin)
        self.business_margin = to_decimal(self.business_margin)


# ===================================================================
# 2. Dunning defaults
# ===================================================================

@dataclass
class DunningSettings:
    """Defaults applied when building dunning emails."""
    default_payment_term_days: int = 14
    payment_deadline_days: int = 14    # frist = today + N days
    default_country: str = "Deutschland"


# ===================================================================
# 3. Template Paths
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the default merge-field templates live."""
    template_dir: str = str(DEFAULT_TEMPLATE_DIR)

    @property
    def resolved_dir(self) -> Path:
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 4. Output Directory
# ===================================================================

@dataclass
class OutputConfig:
    """Where rendered previews are written by the CLI."""
    output_dir: str = "output/previews"
    log_file: str = "output/debitorenportal.log"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p

    def ensure_dirs(self) -> None:
        """Create output directories if they don't exist."""
        self.resolve(self.output_dir).mkdir(parents=True, exist_ok=True)
        self.resolve(self.log_file).parent.mkdir(parents=True, exist_ok=True)


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class PortalConfig:
    """Top-level configuration container."""
    interest: InterestSettings = field(default_factory=InterestSettings)
    dunning: DunningSettings = field(default_factory=DunningSettings)
    company: CompanySettings = field(default_factory=CompanySettings)
    template_paths: TemplatePaths = field(default_factory=TemplatePaths)
    output: OutputConfig = field(default_factory=OutputConfig)


# ===================================================================
# YAML Loading
# ===================================================================

_DECIMAL_FIELDS = {"fallback_base_rate", "consumer_margin", "business_margin"}


def _apply_yaml_to_config(cfg: PortalConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a PortalConfig instance."""
    _section_map = {
        "interest": cfg.interest,
        "dunning": cfg.dunning,
        "company": cfg.company,
        "template_paths": cfg.template_paths,
        "output": cfg.output,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if not hasattr(section_obj, attr):
                    continue
                if attr in _DECIMAL_FIELDS:
                    val = to_decimal(val, getattr(section_obj, attr))
                elif section_key == "company":
                    val = "" if val is None else str(val)
                setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> PortalConfig:
    """Build a PortalConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Raises:
        FileNotFoundError: If an explicit *yaml_path* does not exist.
    """
    cfg = PortalConfig()

    if yaml_path is not None and not Path(yaml_path).exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg
