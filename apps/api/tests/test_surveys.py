import asyncio
import hashlib

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger
from services import surveys as surveys_service
from services.credits import append_credit_entry
from services.surveys import fetch_available_surveys, handle_postback


SECRET = "cpx-secret-value"


@pytest.fixture(autouse=True)
def cpx_settings(monkeypatch):
    monkeypatch.setattr(settings, "CPX_APP_ID", "12345")
    monkeypatch.setattr(settings, "CPX_SECURE_HASH", SECRET)
    monkeypatch.setattr(settings, "CPX_CREDITS_PER_DOLLAR", 100)


def _signature(trans_id: str) -> str:
    return hashlib.md5(f"{trans_id}-{SECRET}".encode()).hexdigest()


def _postback_params(user_id: str, trans_id: str = "XYZ", status: str = "1", amount_usd: str = "1.25") -> dict:
    return {
        "status": status,
        "trans_id": trans_id,
        "user_id": user_id,
        "amount_usd": amount_usd,
        "amount_local": "125",
        "offer_id": "offer-7",
        "hash": _signature(trans_id),
    }


async def _ledger_rows(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(select(CreditLedger).where(CreditLedger.user_id == user_id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_completed_postback_credits_user(api_client, session_maker, user_id, auth_headers):
    response = await api_client.get("/surveys/postback", params=_postback_params(user_id))

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "credits_awarded": 125}

    rows = await _ledger_rows(session_maker, user_id)
    assert len(rows) == 1
    assert rows[0].reason == "survey_complete"
    assert rows[0].delta == 125
    assert "Trans: XYZ" in rows[0].description

    balance = await api_client.get("/credits/balance", headers=auth_headers)
    assert balance.json()["credit_balance"] == 125


@pytest.mark.asyncio
async def test_duplicate_postback_is_a_successful_no_op(api_client, session_maker, user_id):
    first = await api_client.get("/surveys/postback", params=_postback_params(user_id))
    second = await api_client.get("/surveys/postback", params=_postback_params(user_id))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "ok"
    assert second.json()["credits_awarded"] == first.json()["credits_awarded"]
    assert second.json()["duplicate"] is True

    rows = await _ledger_rows(session_maker, user_id)
    assert len([row for row in rows if "XYZ" in (row.description or "")]) == 1


@pytest.mark.asyncio
async def test_forged_signature_never_touches_ledger(api_client, session_maker, user_id):
    params = _postback_params(user_id)
    params["hash"] = hashlib.md5(b"XYZ-guessed-secret").hexdigest()

    response = await api_client.get("/surveys/postback", params=params)

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"
    assert await _ledger_rows(session_maker, user_id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["trans_id", "user_id", "status", "amount_usd", "hash"])
async def test_missing_fields_are_rejected(api_client, session_maker, user_id, missing):
    params = _postback_params(user_id)
    params.pop(missing)

    response = await api_client.get("/surveys/postback", params=params)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MISSING_PARAMETERS"
    assert missing in response.json()["detail"]["missing"]
    assert await _ledger_rows(session_maker, user_id) == []


@pytest.mark.asyncio
async def test_unknown_status_is_rejected(api_client, session_maker, user_id):
    response = await api_client.get("/surveys/postback", params=_postback_params(user_id, status="7"))

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "UNKNOWN_STATUS"
    assert await _ledger_rows(session_maker, user_id) == []


@pytest.mark.asyncio
async def test_reversal_posts_negative_adjustment_once(api_client, session_maker, user_id, auth_headers):
    await api_client.get("/surveys/postback", params=_postback_params(user_id, trans_id="R-1"))
    reversal = _postback_params(user_id, trans_id="R-1", status="2")

    first = await api_client.get("/surveys/postback", params=reversal)
    repeat = await api_client.get("/surveys/postback", params=reversal)

    assert first.json() == {"status": "ok", "credits_reversed": 125}
    assert repeat.json()["duplicate"] is True
    rows = await _ledger_rows(session_maker, user_id)
    assert sorted((row.reason, row.delta) for row in rows) == [("adjust", -125), ("survey_complete", 125)]

    balance = await api_client.get("/credits/balance", headers=auth_headers)
    assert balance.json()["credit_balance"] == 0


@pytest.mark.asyncio
async def test_reversal_without_completion_may_go_negative(api_client, user_id, auth_headers):
    response = await api_client.get(
        "/surveys/postback",
        params=_postback_params(user_id, trans_id="R-2", status="2", amount_usd="0.5"),
    )

    assert response.status_code == 200
    balance = await api_client.get("/credits/balance", headers=auth_headers)
    assert balance.json()["credit_balance"] == -50


@pytest.mark.asyncio
async def test_postback_for_unknown_user_is_rejected(api_client):
    response = await api_client.get("/surveys/postback", params=_postback_params("ghost-user"))

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "UNKNOWN_USER"


@pytest.mark.asyncio
async def test_postback_requires_configured_secret(api_client, user_id, monkeypatch):
    params = _postback_params(user_id)
    monkeypatch.setattr(settings, "CPX_SECURE_HASH", "")

    response = await api_client.get("/surveys/postback", params=params)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_survey_hash_and_config(api_client, user_id, auth_headers):
    config = await api_client.get("/surveys/config")
    assert config.json() == {"configured": True, "app_id": "12345", "credits_per_dollar": 100}

    hashed = await api_client.get("/surveys/hash", headers=auth_headers)
    assert hashed.status_code == 200
    assert hashed.json()["secure_hash"] == hashlib.md5(f"{user_id}-{SECRET}".encode()).hexdigest()


@pytest.mark.asyncio
async def test_fetch_available_surveys_signs_request_and_maps_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        return httpx.Response(
            200,
            json={
                "status": "success",
                "count_available_surveys": 40,
                "count_returned_surveys": 1,
                "surveys": [
                    {
                        "id": "s-1",
                        "loi": "12",
                        "payout": 90,
                        "payout_publisher_usd": "0.75",
                        "conversion_rate": "0.35",
                        "href": "https://offers.cpx-research.com/s-1",
                        "type": "survey",
                        "statistics_rating_count": "18",
                        "statistics_rating_avg": "4.5",
                    }
                ],
            },
        )

    payload = await fetch_available_surveys(
        "user-9",
        ip_user="203.0.113.9",
        user_agent="pytest",
        transport=httpx.MockTransport(handler),
    )

    params = captured["url"].params
    assert captured["url"].path.endswith("/get-surveys.php")
    assert params["app_id"] == "12345"
    assert params["ext_user_id"] == "user-9"
    assert params["secure_hash"] == hashlib.md5(f"user-9-{SECRET}".encode()).hexdigest()
    assert payload["count"] == 1
    assert payload["total_available"] == 40
    survey = payload["surveys"][0]
    assert survey["length_minutes"] == 12
    assert survey["payout_usd"] == 0.75
    assert survey["credits_reward"] == 75
    assert survey["rating"] == 4.5
    assert survey["rating_count"] == 18


@pytest.mark.asyncio
async def test_fetch_available_surveys_maps_upstream_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "error", "message": "bad app"})

    with pytest.raises(HTTPException) as exc_info:
        await fetch_available_surveys("user-9", ip_user="127.0.0.1", transport=httpx.MockTransport(handler))

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail["code"] == "SURVEYS_UPSTREAM_ERROR"


@pytest.mark.asyncio
async def test_duplicate_that_slips_past_lookup_is_acknowledged(db, session_maker, user_id, monkeypatch):
    await append_credit_entry(
        user_id,
        db,
        delta=125,
        reason="survey_complete",
        description="CPX Survey offer-7 (Trans: RACE-1, $1.25)",
        external_ref="cpx:completed:RACE-1",
    )

    async def lookup_before_commit(external_ref, session):
        return None

    monkeypatch.setattr(surveys_service, "find_entry_by_external_ref", lookup_before_commit)

    ack = await handle_postback(_postback_params(user_id, trans_id="RACE-1"), db)

    assert ack["duplicate"] is True
    assert ack["credits_awarded"] == 125
    rows = await _ledger_rows(session_maker, user_id)
    assert [row.external_ref for row in rows] == ["cpx:completed:RACE-1"]


@pytest.mark.asyncio
async def test_concurrent_postback_deliveries_credit_once(session_maker, user_id):
    async def deliver():
        async with session_maker() as session:
            return await handle_postback(_postback_params(user_id, trans_id="RACE-2"), session)

    acks = await asyncio.gather(deliver(), deliver())

    assert sorted(bool(ack.get("duplicate")) for ack in acks) == [False, True]
    rows = await _ledger_rows(session_maker, user_id)
    assert len(rows) == 1
    assert rows[0].delta == 125
