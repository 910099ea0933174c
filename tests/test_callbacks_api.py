from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from codeshop.services import transaction_ledger
from codeshop.services.notifications import PremiumCodeNotice


def _notification(order_id: str = "ORD1", result_code=0, **extra) -> dict:
    return {
        "partnerCode": "MOMO",
        "orderId": order_id,
        "requestId": order_id,
        "amount": 199000,
        "transId": 4088878653,
        "resultCode": result_code,
        "message": "Successful.",
        **extra,
    }


def _query(location: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


async def test_notify_success_issues_code(client, pending_order, dispatcher):
    await pending_order("ORD1")

    r = await client.post("/callback/notify", json=_notification())
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "success"
    assert data["orderId"] == "ORD1"
    assert data["code"].startswith("PRM-")

    assert len(dispatcher.sent) == 1
    assert isinstance(dispatcher.sent[0], PremiumCodeNotice)
    assert dispatcher.sent[0].amount == "199000"


async def test_notify_redelivery_is_idempotent(client, pending_order, dispatcher, token_gateway):
    await pending_order("ORD1")

    first = (await client.post("/callback/notify", json=_notification())).json()
    second = (await client.post("/callback/notify", json=_notification())).json()

    assert first["code"] == second["code"]
    assert token_gateway.calls == 1
    assert len(dispatcher.sent) == 1


async def test_notify_failure_and_hold(client, pending_order, db):
    await pending_order("ORD1")
    await pending_order("ORD2")

    r = await client.post("/callback/notify", json=_notification("ORD1", result_code=1006, message="Denied"))
    assert r.status_code == 200
    assert r.json()["status"] == "failed"

    r = await client.post("/callback/notify", json=_notification("ORD2", result_code=7000))
    assert r.json()["status"] == "pending"

    assert (await transaction_ledger.by_order_id(db, "ORD1")).status == "cancelled"
    assert (await transaction_ledger.by_order_id(db, "ORD2")).status == "pending"


async def test_notify_unknown_order(client):
    r = await client.post("/callback/notify", json=_notification("GHOST"))
    assert r.status_code == 404
    assert r.json()["message"] == "Transaction not found"


async def test_notify_invalid_payload(client):
    r = await client.post("/callback/notify", json={"resultCode": 0})
    assert r.status_code == 400

    r = await client.post("/callback/notify", content=b"not json", headers={"content-type": "application/json"})
    assert r.status_code == 400


async def test_redirect_success_then_notify_replays(client, pending_order, dispatcher):
    await pending_order("ORD1")

    r = await client.get("/callback/redirect", params=_notification())
    assert r.status_code == 302
    location = r.headers["location"]
    assert "/payment-success?" in location
    query = _query(location)
    assert query["orderId"] == "ORD1"
    assert query["transId"] == "4088878653"

    notify = (await client.post("/callback/notify", json=_notification())).json()
    assert notify["code"] == query["code"]
    assert len(dispatcher.sent) == 1


async def test_redirect_errors(client, pending_order):
    await pending_order("ORD1")

    r = await client.get("/callback/redirect", params=_notification("ORD1", result_code=1006))
    assert "/payment-error?" in r.headers["location"]
    assert _query(r.headers["location"])["error"] == "payment_failed"

    r = await client.get("/callback/redirect", params=_notification("GHOST"))
    assert _query(r.headers["location"])["error"] == "transaction_not_found"

    r = await client.get("/callback/redirect", params={"resultCode": "0"})
    assert _query(r.headers["location"])["error"] == "invalid_request"


async def test_redirect_reject_on_paid_order_lands_on_success(client, pending_order, db):
    await pending_order("ORD1")
    await transaction_ledger.advance(db, "ORD1", "success", result_code="0")

    r = await client.get("/callback/redirect", params=_notification("ORD1", result_code=1006))
    assert r.status_code == 302
    assert "/payment-success?" in r.headers["location"]
    assert _query(r.headers["location"])["code"].startswith("PRM-")


async def test_status(client, pending_order):
    await pending_order("ORD1")

    r = await client.get("/callback/status/ORD1")
    assert r.status_code == 200
    assert r.json()["callbackReceived"] is False
    assert r.json()["status"] == "pending"

    await client.post("/callback/notify", json=_notification())

    data = (await client.get("/callback/status/ORD1")).json()
    assert data["callbackReceived"] is True
    assert data["status"] == "success"
    assert data["details"]["resultCode"] == "0"
    assert data["details"]["transId"] == "4088878653"
    assert data["details"]["codeId"] is not None


async def test_status_unknown_order(client):
    r = await client.get("/callback/status/GHOST")
    assert r.status_code == 404
    assert r.json()["status"] == "not_found"
    assert r.json()["callbackReceived"] is False
