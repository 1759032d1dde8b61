"""Tests for solesync.core.config."""

import os

import pytest
from pydantic import ValidationError

from solesync.core.config import (
    FreshnessConfig,
    ProviderConfig,
    ProvidersConfig,
    QueueConfig,
    SolesyncConfig,
    WorkerConfig,
    _auto_cast,
    _merge_env_vars,
    load_config,
)
from solesync.core.exceptions import ConfigError
from solesync.core.models import Provider


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from SOLESYNC_* variables and any solesync.yml in the cwd."""
    for key in list(os.environ):
        if key.startswith("SOLESYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


class TestProviderConfig:
    def test_defaults(self):
        providers = ProvidersConfig()
        assert providers.stockx.hourly_rate_limit == 1000
        assert providers.alias.hourly_rate_limit == 600
        assert providers.ebay.default_currency == "GBP"

    def test_get_by_enum_and_string(self):
        providers = ProvidersConfig()
        assert providers.get(Provider.ALIAS) is providers.alias
        assert providers.get("ebay") is providers.ebay

    def test_enabled_skips_disabled(self):
        providers = ProvidersConfig(alias=ProviderConfig(enabled=False))
        assert providers.enabled() == [Provider.STOCKX, Provider.EBAY]

    def test_rate_limit_must_be_positive(self):
        with pytest.raises(ValidationError, match="hourly_rate_limit"):
            ProviderConfig(hourly_rate_limit=0)

    def test_currency_upper_cased(self):
        assert ProviderConfig(default_currency="eur").default_currency == "EUR"

    def test_unsupported_currency(self):
        with pytest.raises(ValidationError, match="default_currency"):
            ProviderConfig(default_currency="JPY")


class TestSectionValidation:
    def test_backoff_ordered(self):
        with pytest.raises(ValidationError, match="backoff_base_seconds"):
            QueueConfig(backoff_base_seconds=600, backoff_max_seconds=60)

    def test_freshness_thresholds_ordered(self):
        with pytest.raises(ValidationError, match="fresh_minutes"):
            FreshnessConfig(fresh_minutes=400, aging_minutes=360)

    def test_client_factory_must_be_import_path(self):
        with pytest.raises(ValidationError, match="client_factory"):
            WorkerConfig(client_factory="mypkg.clients")
        assert WorkerConfig(client_factory="mypkg.clients:build").client_factory

    def test_config_is_frozen(self):
        config = SolesyncConfig()
        with pytest.raises(ValidationError):
            config.queue = QueueConfig()


class TestLoadConfig:
    def test_defaults(self):
        config = load_config()
        assert config.queue.max_attempts == 3
        assert config.freshness.fresh_minutes == 60
        assert config.fx.base_currency == "GBP"

    def test_yaml_loading(self, tmp_path):
        path = tmp_path / "custom.yml"
        path.write_text(
            "providers:\n  stockx:\n    hourly_rate_limit: 50\nqueue:\n  max_attempts: 5\n"
        )
        config = load_config(config_path=str(path))
        assert config.providers.stockx.hourly_rate_limit == 50
        assert config.providers.alias.hourly_rate_limit == 600
        assert config.queue.max_attempts == 5

    def test_default_file_in_cwd(self, tmp_path):
        (tmp_path / "solesync.yml").write_text("worker:\n  concurrency: 9\n")
        assert load_config().worker.concurrency == 9

    def test_config_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "elsewhere.yml"
        path.write_text("api:\n  port: 9001\n")
        monkeypatch.setenv("SOLESYNC_CONFIG", str(path))
        assert load_config().api.port == 9001

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yml"
        path.write_text("queue:\n  max_attempts: 5\n")
        monkeypatch.setenv("SOLESYNC_QUEUE__MAX_ATTEMPTS", "7")
        assert load_config(config_path=str(path)).queue.max_attempts == 7

    def test_nested_env_vars(self, monkeypatch):
        monkeypatch.setenv("SOLESYNC_PROVIDERS__EBAY__ENABLED", "false")
        config = load_config()
        assert config.providers.ebay.enabled is False
        assert Provider.EBAY not in config.providers.enabled()

    def test_missing_config_file_raises(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config(config_path="/nonexistent/solesync.yml")

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("queue: [unclosed\n")
        with pytest.raises(ConfigError, match="parse YAML"):
            load_config(config_path=str(path))

    def test_non_mapping_yaml_raises(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path=str(path))

    def test_validation_failure_wrapped(self, monkeypatch):
        monkeypatch.setenv("SOLESYNC_WORKER__CONCURRENCY", "0")
        with pytest.raises(ConfigError, match="concurrency"):
            load_config()


class TestMergeEnvVars:
    def test_does_not_mutate_base(self, monkeypatch):
        base = {"queue": {"max_attempts": 2}}
        monkeypatch.setenv("SOLESYNC_QUEUE__MAX_ATTEMPTS", "4")
        merged = _merge_env_vars(base, "SOLESYNC_")
        assert merged["queue"]["max_attempts"] == 4
        assert base["queue"]["max_attempts"] == 2

    def test_config_path_var_ignored(self, monkeypatch):
        monkeypatch.setenv("SOLESYNC_CONFIG", "/tmp/x.yml")
        assert "config" not in _merge_env_vars({}, "SOLESYNC_")


class TestAutoCast:
    def test_bools(self):
        assert _auto_cast("true") is True
        assert _auto_cast("FALSE") is False

    def test_numbers(self):
        assert _auto_cast("42") == 42
        assert _auto_cast("2.5") == 2.5

    def test_string(self):
        assert _auto_cast("mypkg.clients:build") == "mypkg.clients:build"
