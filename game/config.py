"""Configuration loading from settings.yaml and .env."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

from .retry import RetryPolicy
from .state import RoundTiming


def load_config(
    config_dir: str | Path | None = None,
) -> dict:
    """Load settings.yaml and .env, return merged config dict."""
    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    config_dir = Path(config_dir)

    # Load .env (silently skip if missing)
    env_path = config_dir / ".env"
    load_dotenv(env_path)

    settings_path = config_dir / "settings.yaml"
    if not settings_path.exists():
        raise FileNotFoundError(f"Config not found: {settings_path}")

    with open(settings_path, encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    cfg["_secrets"] = {
        "moltbook_api_key": os.getenv("MOLTBOOK_API_KEY", ""),
    }

    return cfg


@dataclass(frozen=True)
class EngineSettings:
    """Typed view of the config sections the round engine reads."""

    round_duration: float = 24
    test_mode: bool = False
    minimum_votes: int = 0
    tie_break: str = "random"
    score_max_attempts: int = 3
    score_backoff_base: float = 1.0
    score_timeout: float = 10.0
    advance_max_attempts: int = 3
    advance_retry_delay: float = 5.0
    publish_timeout: float = 120.0
    rearm_delay: float = 300.0
    submolt: str = "general"
    title_prefix: str = "SubQuest"
    comment_delay: float = 6.0
    http_timeout: float = 30.0
    db_path: str = "data/games.db"

    @property
    def timing(self) -> RoundTiming:
        return RoundTiming.for_mode(self.round_duration, self.test_mode)

    @property
    def score_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.score_max_attempts,
            base_delay=self.score_backoff_base,
            backoff="exponential",
        )

    @property
    def advance_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.advance_max_attempts,
            base_delay=self.advance_retry_delay,
            backoff="fixed",
        )

    @classmethod
    def from_config(cls, cfg: dict | None) -> EngineSettings:
        cfg = cfg or {}
        game = cfg.get("game", {}) or {}
        voting = cfg.get("voting", {}) or {}
        scheduler = cfg.get("scheduler", {}) or {}
        moltbook = cfg.get("moltbook", {}) or {}
        storage = cfg.get("storage", {}) or {}
        defaults = cls()
        return cls(
            round_duration=float(game.get("round_duration", defaults.round_duration)),
            test_mode=bool(game.get("test_mode", defaults.test_mode)),
            minimum_votes=int(voting.get("minimum_votes", defaults.minimum_votes)),
            tie_break=str(voting.get("tie_break", defaults.tie_break)),
            score_max_attempts=int(voting.get("max_attempts", defaults.score_max_attempts)),
            score_backoff_base=float(voting.get("backoff_base_seconds", defaults.score_backoff_base)),
            score_timeout=float(voting.get("fetch_timeout_seconds", defaults.score_timeout)),
            advance_max_attempts=int(scheduler.get("max_attempts", defaults.advance_max_attempts)),
            advance_retry_delay=float(scheduler.get("retry_delay_seconds", defaults.advance_retry_delay)),
            publish_timeout=float(scheduler.get("publish_timeout_seconds", defaults.publish_timeout)),
            rearm_delay=float(scheduler.get("rearm_delay_seconds", defaults.rearm_delay)),
            submolt=str(moltbook.get("submolt", defaults.submolt)),
            title_prefix=str(moltbook.get("title_prefix", defaults.title_prefix)),
            comment_delay=float(moltbook.get("comment_delay_seconds", defaults.comment_delay)),
            http_timeout=float(moltbook.get("timeout_seconds", defaults.http_timeout)),
            db_path=str(storage.get("game_db", defaults.db_path)),
        )
