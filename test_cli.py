"""
Smoke tests for the management CLI against a temporary database.
"""

import pytest
import yaml

import regwatch_cli


@pytest.fixture(autouse=True)
def cli_config(tmp_path, monkeypatch):
    path = tmp_path / "regwatch.yml"
    path.write_text(yaml.safe_dump({
        "database": {"path": str(tmp_path / "cli.db")},
        "blacklist": ["InvalidSyn"],
        "crawlers": [{"name": "US_510K", "source": "conftest:FakeSource", "fields": [
            {"name": "deviceNames", "type": "stringList"},
        ]}],
    }))
    monkeypatch.setenv("REGWATCH_CONFIG", str(path))
    for name in ("REGWATCH_DB", "CLASSIFIER_API_KEY", "CLASSIFIER_MODEL"):
        monkeypatch.delenv(name, raising=False)
    return path


def test_format_duration():
    assert regwatch_cli.format_duration(None) == "-"
    assert regwatch_cli.format_duration(1500) == "1.5s"
    assert regwatch_cli.format_duration(90_000) == "1.5m"
    assert regwatch_cli.format_duration(5_400_000) == "1.5h"


async def test_usage_and_unknown_command(capsys):
    assert await regwatch_cli.main([]) == 1
    assert await regwatch_cli.main(["explode"]) == 1
    assert await regwatch_cli.main(["trigger"]) == 1
    assert "Unknown command: explode" in capsys.readouterr().out


async def test_blacklist_commands(capsys):
    assert await regwatch_cli.main(["blacklist", "add", "Veterinary", "invalidsyn"]) == 0
    assert "Added 1 keyword(s)" in capsys.readouterr().out

    assert await regwatch_cli.main(["blacklist"]) == 0
    out = capsys.readouterr().out
    assert "InvalidSyn" in out
    assert "Veterinary" in out


async def test_errors_are_reported(capsys):
    assert await regwatch_cli.main(["pause", "42"]) == 1
    assert "Scheduled task not found: 42" in capsys.readouterr().out

    assert await regwatch_cli.main(["progress", "nope"]) == 1
    assert await regwatch_cli.main(["stats", "abc"]) == 1


async def test_overview_on_empty_database(capsys):
    assert await regwatch_cli.main(["overview"]) == 0
    assert "Tasks: 0" in capsys.readouterr().out


async def test_blacklist_remove_and_empty_listings(capsys):
    assert await regwatch_cli.main(["blacklist", "remove", "invalidsyn"]) == 0
    assert "Removed 1 keyword(s)" in capsys.readouterr().out

    assert await regwatch_cli.main(["judges"]) == 0
    assert "No judge tasks" in capsys.readouterr().out

    assert await regwatch_cli.main(["schedule", "1", "0", "3", "*", "*", "*"]) == 1
    assert "Preset not found: 1" in capsys.readouterr().out


async def test_crawler_switch_persists_between_invocations(capsys):
    assert await regwatch_cli.main(["disable", "US_510K"]) == 0
    assert "US_510K disabled" in capsys.readouterr().out

    assert await regwatch_cli.main(["crawlers"]) == 0
    assert "Enabled: 0  Disabled: 1" in capsys.readouterr().out

    assert await regwatch_cli.main(["enable", "US_510K"]) == 0
    assert await regwatch_cli.main(["crawlers"]) == 0
    assert "Enabled: 1  Disabled: 0" in capsys.readouterr().out

    assert await regwatch_cli.main(["enable", "KR_510K"]) == 1
    assert "Crawler not found: KR_510K" in capsys.readouterr().out
