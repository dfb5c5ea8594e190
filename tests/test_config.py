"""Tests for debitorenportal.config -- defaults and YAML overlay."""

from decimal import Decimal
from pathlib import Path

import pytest

from debitorenportal.config import (
    DEFAULT_TEMPLATE_DIR,
    PROJECT_ROOT,
    PortalConfig,
    get_config,
)


class TestDefaults:

    def test_interest_defaults(self):
        cfg = PortalConfig()
        assert cfg.interest.fallback_base_rate == Decimal("2.82")
        assert cfg.interest.consumer_margin == Decimal(5)
        assert cfg.interest.business_margin == Decimal(9)
        assert cfg.interest.days_per_year == 365

    def test_dunning_defaults(self):
        cfg = PortalConfig()
        assert cfg.dunning.default_payment_term_days == 14
        assert cfg.dunning.payment_deadline_days == 14
        assert cfg.dunning.default_country == "Deutschland"

    def test_template_dir_resolves(self):
        assert PortalConfig().template_paths.resolved_dir == DEFAULT_TEMPLATE_DIR
        assert (DEFAULT_TEMPLATE_DIR / "templates.yaml").exists()

    def test_relative_output_resolves_under_project(self):
        cfg = PortalConfig()
        assert cfg.output.resolve("output/x") == PROJECT_ROOT / "output" / "x"


class TestYamlOverlay:

    def test_overlay(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "interest:\n"
            "  fallback_base_rate: '3.62'\n"
            "  business_margin: 8\n"
            "dunning:\n"
            "  payment_deadline_days: 10\n"
            "company:\n"
            "  name: Muster GmbH\n"
            "  plz: 10115\n"
            "  iban: null\n"
            "  unknown_key: ignored\n",
            encoding="utf-8",
        )
        cfg = get_config(path)
        assert cfg.interest.fallback_base_rate == Decimal("3.62")
        assert cfg.interest.business_margin == Decimal(8)
        assert cfg.interest.consumer_margin == Decimal(5)
        assert cfg.dunning.payment_deadline_days == 10
        assert cfg.company.name == "Muster GmbH"
        assert cfg.company.plz == "10115"
        assert cfg.company.iban == ""
        assert not hasattr(cfg.company, "unknown_key")

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert get_config(path) == PortalConfig()

    def test_bad_decimal_keeps_default(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("interest:\n  fallback_base_rate: viel\n", encoding="utf-8")
        assert get_config(path).interest.fallback_base_rate == Decimal("2.82")

    def test_missing_explicit_file_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            get_config(tmp_path / "nope.yaml")

    def test_template_paths_section(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("template_paths:\n  template_dir: vorlagen\n", encoding="utf-8")
        assert get_config(path).template_paths.resolved_dir == PROJECT_ROOT / "vorlagen"
