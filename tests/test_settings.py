import json

import pytest
from pydantic import ValidationError

from vidrelay.config.settings import Config, LoggingConfig, load_config


def test_defaults():
    cfg = Config()
    assert cfg.rate_limit.max_requests == 30
    assert cfg.rate_limit.window_seconds == 60
    assert cfg.extractor.download_timeout_seconds == 600
    assert cfg.redis.enabled is False
    assert "youtube.com" in cfg.policy.allowed_source_domains
    assert "googlevideo.com" in cfg.policy.allowed_relay_domains


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("VIDRELAY_RATE_LIMIT__MAX_REQUESTS", "5")
    monkeypatch.setenv("VIDRELAY_EXTRACTOR__BINARY", "/opt/yt-dlp")
    cfg = Config()
    assert cfg.rate_limit.max_requests == 5
    assert cfg.extractor.binary == "/opt/yt-dlp"


def test_load_from_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"rate_limit": {"max_requests": 3}, "logging": {"level": "debug"}}))
    monkeypatch.setenv("CONFIG_PATH", str(path))

    cfg = load_config()
    assert cfg.rate_limit.max_requests == 3
    assert cfg.logging.level == "DEBUG"


def test_broken_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    cfg = Config.load_from_file(str(path))
    assert cfg.rate_limit.max_requests == 30


def test_invalid_log_level():
    with pytest.raises(ValidationError):
        LoggingConfig(level="LOUD")
