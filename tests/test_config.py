"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for credit-core settings.
"""

import os
import tempfile
from datetime import timedelta

import pytest
import yaml

from studio_credits.config.loader import (
    DEFAULT_PLANS,
    JobsConfig,
    LedgerConfig,
    Settings,
    default_settings,
    load_settings,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "settings.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "database": "credits.db",
            "ledger": {"welcome_grant": 50, "max_conflict_retries": 3},
            "jobs": {"stale_after_seconds": 600, "sweep_interval_seconds": 60},
            "remote": {"timeout_seconds": 5, "read_retries": 2},
            "auth": {"session_ttl_seconds": 7200},
            "checkout": {"bank_name": "VCB", "account_name": "STUDIO", "account_number": "999"},
        }

        settings = load_settings(self._write_config(config_data))

        assert settings.database == "credits.db"
        assert settings.ledger == LedgerConfig(welcome_grant=50, max_conflict_retries=3)
        assert settings.jobs.stale_after == timedelta(minutes=10)
        assert settings.jobs.sweep_interval == timedelta(minutes=1)
        assert settings.remote.timeout_seconds == 5.0
        assert settings.remote.read_retries == 2
        assert settings.remote.retry_backoff_seconds == 0.2
        assert settings.auth.session_ttl == timedelta(hours=2)
        assert settings.checkout.bank_name == "VCB"
        assert settings.plans == DEFAULT_PLANS

    def test_empty_file_gives_defaults(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, "w").close()

        assert load_settings(path) == Settings()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_settings(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("ledger: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_settings(path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(self._write_config({"ledgr": {}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in ledger"):
            load_settings(self._write_config({"ledger": {"welcome": 10}}))

    @pytest.mark.parametrize("section,key,value", [
        ("ledger", "welcome_grant", "100"),
        ("ledger", "welcome_grant", True),
        ("jobs", "stale_after_seconds", 1.5),
        ("remote", "timeout_seconds", "fast"),
        ("checkout", "bank_name", ""),
    ])
    def test_wrong_types_rejected(self, section, key, value):
        with pytest.raises(ValueError):
            load_settings(self._write_config({section: {key: value}}))

    @pytest.mark.parametrize("section,key,value", [
        ("ledger", "welcome_grant", -1),
        ("jobs", "stale_after_seconds", 0),
        ("remote", "read_retries", 0),
        ("auth", "session_ttl_seconds", -5),
    ])
    def test_out_of_range_values_rejected(self, section, key, value):
        with pytest.raises(ValueError):
            load_settings(self._write_config({section: {key: value}}))

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError):
            load_settings(self._write_config(["ledger"]))


class TestPlanCatalogConfig:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _load(self, plans):
        path = os.path.join(self.temp_dir, "settings.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump({"plans": plans}, f)
        return load_settings(path)

    def test_custom_plans_replace_defaults(self):
        settings = self._load({
            "plan_basic": {
                "name": "Basic",
                "price": 99000,
                "currency": "vnd",
                "credits": 1000,
                "duration_months": 1,
            }
        })

        assert list(settings.plans) == ["plan_basic"]
        plan = settings.plans["plan_basic"]
        assert plan.currency == "VND"
        assert plan.credits == 1000
        assert plan.description == ""

    def test_missing_plan_key(self):
        with pytest.raises(ValueError, match="Missing required keys"):
            self._load({"plan_basic": {"name": "Basic", "price": 99000}})

    def test_non_positive_credits(self):
        with pytest.raises(ValueError):
            self._load({
                "plan_basic": {
                    "name": "Basic", "price": 99000, "currency": "VND",
                    "credits": 0, "duration_months": 1,
                }
            })

    def test_empty_catalog(self):
        with pytest.raises(ValueError):
            self._load({})


class TestDefaults:

    def test_default_plans(self):
        plans = default_settings().plans
        assert plans["plan_starter"].price == 299000
        assert plans["plan_starter"].credits == 3000
        assert plans["plan_pro"].price == 599000
        assert plans["plan_pro"].credits == 7000
        assert plans["plan_ultra"].price == 1999000
        assert plans["plan_ultra"].credits == 25000

    def test_default_database_override(self):
        assert default_settings("other.db").database == "other.db"
        assert default_settings().database == "studio_credits.db"

    def test_default_jobs_policy(self):
        assert JobsConfig().stale_after == timedelta(minutes=15)
        assert JobsConfig().sweep_interval == timedelta(minutes=5)
