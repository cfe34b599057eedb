"""Tests for configuration loading."""

from datetime import timedelta

import pytest

from game.config import EngineSettings, load_config


def test_load_config_merges_env_secret(tmp_path, monkeypatch):
    monkeypatch.setenv("MOLTBOOK_API_KEY", "placeholder")
    monkeypatch.delenv("MOLTBOOK_API_KEY")
    (tmp_path / "settings.yaml").write_text(
        "game:\n  round_duration: 10\n  test_mode: true\nvoting:\n  tie_break: first\n", encoding="utf-8"
    )
    (tmp_path / ".env").write_text("MOLTBOOK_API_KEY=moltbook_abc\n", encoding="utf-8")

    cfg = load_config(tmp_path)
    assert cfg["game"]["round_duration"] == 10
    assert cfg["_secrets"]["moltbook_api_key"] == "moltbook_abc"


def test_missing_settings_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path)


def test_settings_from_config():
    settings = EngineSettings.from_config({
        "game": {"round_duration": 10, "test_mode": True},
        "voting": {"minimum_votes": 2, "tie_break": "first", "max_attempts": 4, "backoff_base_seconds": 0.5},
        "scheduler": {"max_attempts": 2, "retry_delay_seconds": 1, "rearm_delay_seconds": 60},
        "moltbook": {"submolt": "quests"},
        "storage": {"game_db": "/tmp/g.db"},
    })
    assert settings.timing.unit == "minutes"
    assert settings.timing.as_timedelta() == timedelta(minutes=10)
    assert settings.minimum_votes == 2
    assert settings.tie_break == "first"
    assert settings.score_retry.delays() == [0.5, 1.0, 2.0]
    assert settings.advance_retry.delays() == [1.0]
    assert settings.rearm_delay == 60.0
    assert settings.submolt == "quests"
    assert settings.db_path == "/tmp/g.db"
    # Untouched keys keep their defaults
    assert settings.publish_timeout == 120.0
    assert settings.comment_delay == 6.0


def test_settings_defaults_for_empty_config():
    settings = EngineSettings.from_config({"game": None})
    assert settings.timing.as_timedelta() == timedelta(hours=24)
    assert settings.score_retry.delays() == [1.0, 2.0]
    assert settings.advance_retry.delays() == [5.0, 5.0]
    assert settings.rearm_delay == 300.0
