from __future__ import annotations

from common.config import Config


def test_defaults(monkeypatch) -> None:
    for key in ("DM_BATCH_SIZE", "DM_MAX_BATCH_SIZE", "MEMBER_PAGE_LIMIT", "DISCORD_API_BASE"):
        monkeypatch.delenv(key, raising=False)
    cfg = Config()
    assert cfg.DM_BATCH_SIZE == 100
    assert cfg.DM_MAX_BATCH_SIZE == 500
    assert cfg.MEMBER_PAGE_LIMIT == 1000
    assert cfg.MEMBER_MAX_PAGES == 50
    assert cfg.DISCORD_API_BASE == "https://discord.com/api/v10"


def test_env_overrides_and_bad_values(monkeypatch) -> None:
    monkeypatch.setenv("MEMBER_PAGE_LIMIT", "5000")
    monkeypatch.setenv("ADMIN_PORT", "not-a-port")
    monkeypatch.setenv("DISCORD_API_BASE", "http://localhost:9000/api/")
    cfg = Config()
    assert cfg.MEMBER_PAGE_LIMIT == 1000
    assert cfg.ADMIN_PORT == 8080
    assert cfg.DISCORD_API_BASE == "http://localhost:9000/api"


def test_clamp_batch_size(monkeypatch) -> None:
    monkeypatch.delenv("DM_BATCH_SIZE", raising=False)
    monkeypatch.delenv("DM_MAX_BATCH_SIZE", raising=False)
    cfg = Config()
    assert cfg.clamp_batch_size(None) == 100
    assert cfg.clamp_batch_size("abc") == 100
    assert cfg.clamp_batch_size(0) == 100
    assert cfg.clamp_batch_size(1) == 1
    assert cfg.clamp_batch_size("25") == 25
    assert cfg.clamp_batch_size(10_000) == 500
    assert cfg.clamp_batch_size(float("inf")) == 100
    assert cfg.clamp_batch_size(float("nan")) == 100
