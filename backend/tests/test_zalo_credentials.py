"""
Zalo OA credential refresher: skip without refresh token, skip while fresh,
refresh inside the 10 minute margin or when expiry is unknown, keep the old
record and audit on OAuth failure, token fallback to ZALO_OA_TOKEN.
"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import httpx

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import AuditAction
from services.zalo_credentials import ZaloCredentialRefresher

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def zalo_app(monkeypatch):
    monkeypatch.setattr("services.zalo_credentials.ZALO_APP_ID", "app-1")
    monkeypatch.setattr("services.zalo_credentials.ZALO_APP_SECRET", "secret-1")


def _oauth_transport(seen, status_code=200, body=None):
    def handler(request):
        seen["secret_key"] = request.headers.get("secret_key")
        seen["form"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(status_code, json=body if body is not None else {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": "90000",
        })
    return httpx.MockTransport(handler)


async def _store(db, **fields):
    await db.zalo_oa.insert_one({"_id": "config", "access_token": "old-access", **fields})


@pytest.mark.asyncio
async def test_skip_without_refresh_token(fake_db):
    await _store(fake_db)
    result = await ZaloCredentialRefresher(db=fake_db).refresh_if_needed(now=NOW)
    assert result == {"action": "skipped", "reason": "no_refresh_token"}


@pytest.mark.asyncio
async def test_skip_while_token_is_fresh(fake_db, zalo_app):
    await _store(fake_db, refresh_token="r1", expires_at=NOW + timedelta(hours=2))
    seen = {}
    refresher = ZaloCredentialRefresher(db=fake_db, transport=_oauth_transport(seen))
    result = await refresher.refresh_if_needed(now=NOW)
    assert result["action"] == "skipped"
    assert result["reason"] == "token_fresh"
    assert seen == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_at", [None, NOW + timedelta(minutes=5), NOW - timedelta(minutes=1)])
async def test_refresh_inside_margin_or_unknown_expiry(fake_db, zalo_app, expires_at):
    await _store(fake_db, refresh_token="r1", expires_at=expires_at)
    seen = {}
    refresher = ZaloCredentialRefresher(db=fake_db, transport=_oauth_transport(seen))
    result = await refresher.refresh_if_needed(now=NOW)

    assert result["action"] == "refreshed"
    assert seen["secret_key"] == "secret-1"
    assert seen["form"] == {"refresh_token": "r1", "app_id": "app-1", "grant_type": "refresh_token"}
    record = await refresher.get_record()
    assert record["access_token"] == "new-access"
    assert record["refresh_token"] == "new-refresh"
    assert record["expires_at"] == NOW + timedelta(seconds=90000)
    assert record["updated_at"] == NOW
    assert any(a["action"] == AuditAction.OAUTH_TOKEN_REFRESHED for a in fake_db.audit_logs.docs)


@pytest.mark.asyncio
async def test_refresh_accepts_iso_string_expiry(fake_db, zalo_app):
    await _store(fake_db, refresh_token="r1", expires_at=(NOW + timedelta(minutes=3)).isoformat())
    result = await ZaloCredentialRefresher(db=fake_db, transport=_oauth_transport({})).refresh_if_needed(now=NOW)
    assert result["action"] == "refreshed"


@pytest.mark.asyncio
async def test_oauth_error_keeps_record_and_audits(fake_db, zalo_app):
    await _store(fake_db, refresh_token="r1", expires_at=None)
    transport = _oauth_transport({}, status_code=400, body={"error": -14014, "error_description": "Invalid refresh token"})
    refresher = ZaloCredentialRefresher(db=fake_db, transport=transport)
    result = await refresher.refresh_if_needed(now=NOW)

    assert result["action"] == "failed"
    assert "Invalid refresh token" in result["error"]
    record = await refresher.get_record()
    assert record["access_token"] == "old-access"
    assert record["refresh_token"] == "r1"
    assert any(a["action"] == AuditAction.OAUTH_TOKEN_REFRESH_FAILED for a in fake_db.audit_logs.docs)


@pytest.mark.asyncio
async def test_missing_app_credentials_fail_without_http(fake_db, monkeypatch):
    monkeypatch.setattr("services.zalo_credentials.ZALO_APP_ID", "")
    await _store(fake_db, refresh_token="r1")
    seen = {}
    result = await ZaloCredentialRefresher(db=fake_db, transport=_oauth_transport(seen)).refresh_if_needed(now=NOW)
    assert result["action"] == "failed"
    assert seen == {}


@pytest.mark.asyncio
async def test_access_token_falls_back_to_static_secret(fake_db):
    refresher = ZaloCredentialRefresher(db=fake_db)
    with patch("services.zalo_credentials.ZALO_OA_TOKEN", "static-token"):
        assert await refresher.get_access_token() == "static-token"
        await _store(fake_db, refresh_token="r1")
        assert await refresher.get_access_token() == "old-access"
