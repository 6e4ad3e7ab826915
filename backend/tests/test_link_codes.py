"""
Zalo link codes: issue (length clamp, alphabet, collision exhaustion, 10 minute ttl)
and redeem (single use, 404/409/410, expired wins over used, legacy expiresAt field,
compare-and-swap against concurrent redemption).
"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import AuditAction
from services.link_codes import (
    ALPHABET,
    LinkCodeExhaustedError,
    LinkCodeService,
    LinkIngestError,
    clamp_length,
)
from utils.dates import to_epoch_ms

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("requested,expected", [(None, 6), (2, 4), (4, 4), (8, 8), (12, 12), (40, 12)])
def test_clamp_length(requested, expected):
    assert clamp_length(requested) == expected


def test_alphabet_has_no_ambiguous_characters():
    for ch in "0O1IL":
        assert ch not in ALPHABET


@pytest.mark.asyncio
async def test_issue_code_stores_single_use_record(fake_db):
    result = await LinkCodeService(fake_db).issue_code("u1", length=8, now=NOW)
    assert len(result["code"]) == 8
    assert set(result["code"]) <= set(ALPHABET)
    assert result["expiresAtMs"] == to_epoch_ms(NOW + timedelta(minutes=10))

    doc = await fake_db.zalo_link_codes.find_one({"code": result["code"]})
    assert doc["uid"] == "u1"
    assert doc["used"] is False
    assert doc["createdAt"] == NOW
    assert any(a["action"] == AuditAction.LINK_CODE_ISSUED for a in fake_db.audit_logs.docs)


@pytest.mark.asyncio
async def test_issue_code_retries_on_collision(fake_db):
    await fake_db.zalo_link_codes.insert_one({"code": "AAAAAA", "uid": "other"})
    with patch("services.link_codes.generate_code", side_effect=["AAAAAA", "AAAAAA", "BBBBBB"]):
        result = await LinkCodeService(fake_db).issue_code("u1", now=NOW)
    assert result["code"] == "BBBBBB"


@pytest.mark.asyncio
async def test_issue_code_exhausted_after_five_collisions(fake_db):
    await fake_db.zalo_link_codes.insert_one({"code": "AAAAAA", "uid": "other"})
    with patch("services.link_codes.generate_code", return_value="AAAAAA") as gen:
        with pytest.raises(LinkCodeExhaustedError):
            await LinkCodeService(fake_db).issue_code("u1", now=NOW)
    assert gen.call_count == 5
    assert len(fake_db.zalo_link_codes.docs) == 1


async def _issued(db, length=6):
    service = LinkCodeService(db)
    result = await service.issue_code("u1", length=length, now=NOW)
    return service, result["code"]


@pytest.mark.asyncio
async def test_redeem_succeeds_exactly_once(fake_db):
    service, code = await _issued(fake_db)
    result = await service.redeem_code("z1", code, now=NOW + timedelta(minutes=1))
    assert result == {"ok": True, "uid": "u1", "zaloUserId": "z1"}

    doc = await fake_db.zalo_link_codes.find_one({"code": code})
    assert doc["used"] is True
    assert doc["usedByExternalId"] == "z1"
    pref = await fake_db.userNotificationPreferences.find_one({"uid": "u1"})
    assert pref["contact"]["zaloUserId"] == "z1"
    mapping = await fake_db.zalo_oa_users.find_one({"externalId": "z1"})
    assert mapping["uid"] == "u1"
    assert mapping["followed"] is True

    with pytest.raises(LinkIngestError) as exc:
        await service.redeem_code("z2", code, now=NOW + timedelta(minutes=2))
    assert exc.value.status_code == 409
    assert exc.value.code == "CODE_USED"


@pytest.mark.asyncio
async def test_redeem_keeps_existing_contact_fields(fake_db):
    await fake_db.userNotificationPreferences.insert_one({"uid": "u1", "contact": {"email": "a@example.vn"}})
    service, code = await _issued(fake_db)
    await service.redeem_code("z1", code, now=NOW)
    pref = await fake_db.userNotificationPreferences.find_one({"uid": "u1"})
    assert pref["contact"] == {"email": "a@example.vn", "zaloUserId": "z1"}


@pytest.mark.asyncio
async def test_redeem_is_case_insensitive(fake_db):
    service, code = await _issued(fake_db)
    result = await service.redeem_code("z1", f"  {code.lower()} ", now=NOW)
    assert result["uid"] == "u1"


@pytest.mark.asyncio
async def test_redeem_unknown_code_is_404(fake_db):
    with pytest.raises(LinkIngestError) as exc:
        await LinkCodeService(fake_db).redeem_code("z1", "NOPE99", now=NOW)
    assert exc.value.status_code == 404
    assert any(a["action"] == AuditAction.LINK_CODE_REJECTED for a in fake_db.audit_logs.docs)


@pytest.mark.asyncio
async def test_redeem_expired_is_410(fake_db):
    service, code = await _issued(fake_db)
    with pytest.raises(LinkIngestError) as exc:
        await service.redeem_code("z1", code, now=NOW + timedelta(minutes=11))
    assert exc.value.status_code == 410
    assert (await fake_db.zalo_link_codes.find_one({"code": code}))["used"] is False


@pytest.mark.asyncio
async def test_expired_wins_over_used(fake_db):
    service, code = await _issued(fake_db)
    await service.redeem_code("z1", code, now=NOW)
    with pytest.raises(LinkIngestError) as exc:
        await service.redeem_code("z1", code, now=NOW + timedelta(hours=1))
    assert exc.value.status_code == 410


@pytest.mark.asyncio
async def test_legacy_expires_at_epoch_ms(fake_db):
    await fake_db.zalo_link_codes.insert_one(
        {"code": "LEGACY", "uid": "u1", "used": False, "expiresAt": to_epoch_ms(NOW - timedelta(seconds=1))}
    )
    with pytest.raises(LinkIngestError) as exc:
        await LinkCodeService(fake_db).redeem_code("z1", "LEGACY", now=NOW)
    assert exc.value.status_code == 410


@pytest.mark.asyncio
async def test_concurrent_redemption_only_one_wins(fake_db):
    service, code = await _issued(fake_db)
    snapshot = await fake_db.zalo_link_codes.find_one({"code": code}, {"_id": 0})

    async def stale_find_one(query, projection=None):
        # Both redeemers read the code before either flips it
        return dict(snapshot)

    fake_db.zalo_link_codes.find_one = stale_find_one
    await service.redeem_code("z1", code, now=NOW)
    with pytest.raises(LinkIngestError) as exc:
        await service.redeem_code("z2", code, now=NOW)
    assert exc.value.status_code == 409

    pref = await fake_db.userNotificationPreferences.find_one({"uid": "u1"})
    assert pref["contact"]["zaloUserId"] == "z1"
    assert await fake_db.zalo_oa_users.find_one({"externalId": "z2"}) is None


@pytest.mark.asyncio
async def test_set_followed_independent_of_linkage(fake_db):
    service = LinkCodeService(fake_db)
    await service.set_followed("z7", True, now=NOW)
    record = await fake_db.zalo_oa_users.find_one({"externalId": "z7"})
    assert record["followed"] is True
    assert "uid" not in record
