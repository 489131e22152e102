"""Tests for startup configuration validation and health probes."""
from __future__ import annotations

import pytest

from config.settings import settings
from src.startup_checks import validate_settings


def test_dev_defaults_only_warn(monkeypatch):
    monkeypatch.setattr(settings, "APP_ENV", "development")
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    warnings = validate_settings()
    assert any("ADMIN_API_KEY" in w for w in warnings)


def test_production_refuses_default_jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "APP_ENV", "production")
    with pytest.raises(SystemExit):
        validate_settings()


def test_production_refuses_default_video_secret(monkeypatch):
    monkeypatch.setattr(settings, "APP_ENV", "production")
    monkeypatch.setattr(settings, "JWT_SECRET", "a-real-secret")
    with pytest.raises(SystemExit):
        validate_settings()


def test_khqr_needs_bakong_account(monkeypatch):
    monkeypatch.setattr(settings, "RAKSMEYPAY_PROFILE_ID", "P-1")
    monkeypatch.setattr(settings, "RAKSMEYPAY_PROFILE_KEY", "key")
    monkeypatch.setattr(settings, "BAKONG_ACCOUNT_ID", "")
    with pytest.raises(SystemExit):
        validate_settings()


def test_production_warns_on_mock_provider(monkeypatch):
    monkeypatch.setattr(settings, "APP_ENV", "production")
    monkeypatch.setattr(settings, "JWT_SECRET", "a-real-secret")
    monkeypatch.setattr(settings, "VIDEO_TOKEN_SECRET", "another-real-secret")
    monkeypatch.setattr(settings, "RAKSMEYPAY_PROFILE_ID", "")
    warnings = validate_settings()
    assert any("MOCK" in w for w in warnings)


@pytest.mark.asyncio
async def test_health_reports_provider(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["db"] == "connected"
    assert body["payments"] == "mock"


@pytest.mark.asyncio
async def test_ready(client):
    resp = await client.get("/ready")
    assert resp.json() == {"ready": True}
