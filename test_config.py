"""
Tests for configuration loading.
"""

import pytest
import yaml

from regwatch.config import AppConfig, load_config
from regwatch.models import FieldType

ENV_VARS = ("REGWATCH_CONFIG", "REGWATCH_DB", "SCHEDULER_TIMEZONE",
            "CLASSIFIER_API_KEY", "CLASSIFIER_BASE_URL", "CLASSIFIER_MODEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "regwatch.yml"
    path.write_text(yaml.safe_dump({
        "database": {"path": str(tmp_path / "app.db")},
        "scheduler": {"timezone": "Asia/Shanghai", "sync_seconds": 10},
        "crawlers": [{
            "name": "US_510K",
            "source": "mycrawlers:Us510k",
            "country_code": "US",
            "fields": [{"name": "deviceNames", "type": "stringList", "required": True}],
        }],
        "presets": [{"name": "daily", "crawler": "US_510K", "parameters": {"deviceNames": ["x"]}, "cron": "0 3 * * *"}],
        "blacklist": ["InvalidSyn"],
        "judging": {"batch_size": 25},
    }))
    return path


def test_load_yaml(config_file, tmp_path):
    cfg = load_config(str(config_file))

    assert cfg.database.path == str(tmp_path / "app.db")
    assert cfg.scheduler.timezone == "Asia/Shanghai"
    assert cfg.scheduler.sync_seconds == 10
    assert cfg.crawlers[0].fields[0].type == FieldType.STRING_LIST
    assert cfg.crawlers[0].common_fields is True
    assert cfg.presets[0].cron == "0 3 * * *"
    assert cfg.blacklist == ["InvalidSyn"]
    assert cfg.judging.batch_size == 25
    assert cfg.judging.cleanup_cron == "0 2 * * *"


def test_environment_overrides(config_file, monkeypatch):
    monkeypatch.setenv("REGWATCH_CONFIG", str(config_file))
    monkeypatch.setenv("REGWATCH_DB", "/tmp/override.db")
    monkeypatch.setenv("CLASSIFIER_API_KEY", "sk-env")
    monkeypatch.setenv("CLASSIFIER_MODEL", "gpt-env")

    cfg = load_config()
    assert cfg.database.path == "/tmp/override.db"
    assert cfg.classifier.api_key == "sk-env"
    assert cfg.classifier.model == "gpt-env"
    assert cfg.scheduler.timezone == "Asia/Shanghai"


def test_missing_file_uses_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "absent.yml"))
    assert cfg == AppConfig()
    assert cfg.judging.pending_ttl_days == 30
    assert cfg.scheduler.timezone == "UTC"
