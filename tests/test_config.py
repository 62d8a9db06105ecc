"""Tests for tradedocs.config -- defaults and YAML overlay.

Covers:
- Dataclass defaults
- YAML overlay (known keys applied, unknown keys ignored)
- Tier sorting
- Environment overrides
- Path resolution
"""

from pathlib import Path

import pytest

from tradedocs.config import PACKAGE_TEMPLATE_DIR, PROJECT_ROOT, TradeDocsConfig, get_config


class TestDefaults:

    def test_reminder_defaults(self):
        cfg = TradeDocsConfig()
        assert cfg.reminders.enabled is True
        assert cfg.reminders.tiers == [7, 14, 30]
        assert cfg.reminders.tone == "friendly"
        assert cfg.reminders.sms_enabled is False
        assert cfg.reminders.fallback_business_name == "Your Service Provider"

    def test_delivery_defaults(self):
        cfg = TradeDocsConfig()
        assert cfg.delivery.allow_without_attachment is False
        assert cfg.delivery.channel_timeout_seconds == 30.0
        assert cfg.delivery.send_claim_ttl_seconds == 300

    def test_templates_default_to_package(self):
        assert TradeDocsConfig().template_paths.resolved_dir == PACKAGE_TEMPLATE_DIR

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = get_config(tmp_path / "absent.yaml")
        assert cfg.reminders.tiers == [7, 14, 30]


class TestYamlOverlay:

    def test_overlay(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "reminders:\n"
            "  tiers: [30, 3, 10]\n"
            "  tone: firm\n"
            "  not_a_setting: 1\n"
            "delivery:\n"
            "  allow_without_attachment: true\n"
            "unknown_section:\n"
            "  x: 1\n",
            encoding="utf-8",
        )

        cfg = get_config(path)

        assert cfg.reminders.tiers == [3, 10, 30]
        assert cfg.reminders.tone == "firm"
        assert not hasattr(cfg.reminders, "not_a_setting")
        assert cfg.delivery.allow_without_attachment is True
        assert cfg.delivery.send_claim_ttl_seconds == 300

    def test_tone_normalised(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("reminders:\n  tone: \" Professional \"\n", encoding="utf-8")
        assert get_config(path).reminders.tone == "professional"

    def test_unknown_tone_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("reminders:\n  tone: shouty\n", encoding="utf-8")
        with pytest.raises(ValueError, match="shouty"):
            get_config(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert get_config(path).reminders.enabled is True

    def test_example_config_loads(self):
        cfg = get_config(PROJECT_ROOT / "config.example.yaml")
        assert cfg.storage.db_path == "output/tradedocs.db"
        assert cfg.contacts.country_code == "61"


class TestEnvironment:

    def test_smtp_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("SMTP_USERNAME", "office@sparky.example")
        monkeypatch.setenv("SMTP_PASSWORD", "app-password")
        cfg = TradeDocsConfig()
        assert cfg.smtp.username == "office@sparky.example"
        assert cfg.smtp.password == "app-password"

    def test_log_level_env_beats_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRADEDOCS_LOG_LEVEL", "DEBUG")
        path = tmp_path / "config.yaml"
        path.write_text("logging:\n  level: WARNING\n", encoding="utf-8")
        assert get_config(path).logging.level == "DEBUG"


class TestPaths:

    def test_relative_paths_resolve_to_project_root(self):
        cfg = TradeDocsConfig()
        assert cfg.storage.resolve("output/x.db") == PROJECT_ROOT / "output" / "x.db"

    def test_absolute_paths_unchanged(self, tmp_path):
        cfg = TradeDocsConfig()
        assert cfg.storage.resolve(str(tmp_path / "x.db")) == tmp_path / "x.db"

    @pytest.mark.parametrize("template_dir", ["custom/templates", "/abs/templates"])
    def test_template_dir_override(self, template_dir):
        cfg = TradeDocsConfig()
        cfg.template_paths.template_dir = template_dir
        expected = Path(template_dir) if Path(template_dir).is_absolute() else PROJECT_ROOT / template_dir
        assert cfg.template_paths.resolved_dir == expected
