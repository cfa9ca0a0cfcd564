"""Tests for engine config validation and runtime-adjustable settings."""
import pytest

import bulk_engine.config as cfg
from bulk_engine.api.config import ApiSettings, RuntimeConfig


@pytest.fixture
def restore_config():
    keys = ["ITEM_DELAY_SECONDS", "BATCH_DELAY_SECONDS", "FRESHNESS_WINDOW_HOURS"]
    saved = {k: getattr(cfg, k) for k in keys}
    yield
    for k, v in saved.items():
        setattr(cfg, k, v)


def test_defaults_validate_cleanly():
    assert cfg.validate_config() == []


def test_validate_flags_bad_batch_size(monkeypatch):
    monkeypatch.setattr(cfg, "DEFAULT_BATCH_SIZE", 0)
    issues = cfg.validate_config()
    assert any(i["level"] == "ERROR" and "DEFAULT_BATCH_SIZE" in i["message"] for i in issues)


def test_validate_warns_on_inverted_stale_windows(monkeypatch):
    monkeypatch.setattr(cfg, "STALE_FAIL_AFTER_SECONDS", 60)
    issues = cfg.validate_config()
    assert any(i["level"] == "WARNING" for i in issues)


def test_api_settings_env_prefix(monkeypatch):
    monkeypatch.setenv("BULK_API_PORT", "9100")
    monkeypatch.setenv("BULK_API_JOB_DB_PATH", "/tmp/jobs.db")
    settings = ApiSettings()
    assert settings.port == 9100
    assert settings.job_db_path == "/tmp/jobs.db"


def test_runtime_patch_applies_and_coerces(restore_config):
    rc = RuntimeConfig()
    state = rc.patch({"ITEM_DELAY_SECONDS": "0.25", "BATCH_DELAY_SECONDS": 1})
    assert state["ITEM_DELAY_SECONDS"] == 0.25
    assert cfg.BATCH_DELAY_SECONDS == 1.0


def test_runtime_patch_rejects_unknown_key(restore_config):
    with pytest.raises(KeyError):
        RuntimeConfig().patch({"MAX_ITEMS_PER_JOB": 5})


def test_runtime_patch_is_all_or_nothing(restore_config):
    before = cfg.ITEM_DELAY_SECONDS
    with pytest.raises(ValueError):
        RuntimeConfig().patch({"ITEM_DELAY_SECONDS": 2.0, "BATCH_DELAY_SECONDS": -1})
    assert cfg.ITEM_DELAY_SECONDS == before


@pytest.mark.asyncio
async def test_config_endpoints(client, restore_config):
    resp = await client.get("/api/config")
    assert resp.status_code == 200
    assert "ITEM_DELAY_SECONDS" in resp.json()["data"]

    resp = await client.patch("/api/config", json={"BATCH_DELAY_SECONDS": 0.5})
    assert resp.status_code == 200
    assert resp.json()["data"]["BATCH_DELAY_SECONDS"] == 0.5

    resp = await client.patch("/api/config", json={"BATCH_DELAY_SECONDS": "soon"})
    assert resp.status_code == 422

    resp = await client.get("/api/config/validate")
    assert resp.json()["data"]["errors"] == 0
