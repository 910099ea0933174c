from __future__ import annotations

from datetime import datetime, timedelta, timezone

from codeshop.services import code_ledger, transaction_ledger
from codeshop.services.notifications import TrialCodeNotice

TRIAL_BODY = {"email": "buyer@example.com", "nameCompany": "Acme", "cccd": "079123456789"}


async def test_root(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "OK"


async def test_request_trial(client, dispatcher):
    r = await client.post("/code/request-trial", json=TRIAL_BODY)
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["trialCode"].startswith("TRL-")
    assert data["expiryDate"]

    assert len(dispatcher.sent) == 1
    assert isinstance(dispatcher.sent[0], TrialCodeNotice)
    assert dispatcher.sent[0].code == data["trialCode"]


async def test_request_trial_twice_same_national_id(client):
    assert (await client.post("/code/request-trial", json=TRIAL_BODY)).status_code == 200

    r = await client.post("/code/request-trial", json={**TRIAL_BODY, "email": "other@example.com"})
    assert r.status_code == 400
    assert r.json()["success"] is False


async def test_request_trial_missing_fields(client):
    r = await client.post("/code/request-trial", json={"email": "buyer@example.com"})
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid request"


async def test_request_trial_blank_national_id_rejected(client, dispatcher):
    r = await client.post("/code/request-trial", json={**TRIAL_BODY, "email": "one@example.com", "cccd": "   "})
    assert r.status_code == 400

    r = await client.post("/code/request-trial", json={**TRIAL_BODY, "email": "two@example.com", "cccd": "   "})
    assert r.status_code == 400
    assert dispatcher.sent == []


async def test_request_trial_padded_national_id_is_the_same_person(client):
    assert (await client.post("/code/request-trial", json=TRIAL_BODY)).status_code == 200

    padded = {**TRIAL_BODY, "email": "other@example.com", "cccd": "  079123456789 "}
    r = await client.post("/code/request-trial", json=padded)
    assert r.status_code == 400


async def test_request_premium_opens_pending_order(client, db):
    r = await client.post("/code/request-premium", json=TRIAL_BODY)
    assert r.status_code == 200
    data = r.json()
    assert data["paymentUrl"].startswith("https://")
    assert data["orderId"].startswith("MOMO")

    txn = await transaction_ledger.by_order_id(db, data["orderId"])
    assert txn.status == "pending"
    assert txn.payment_data["cccd"] == TRIAL_BODY["cccd"]


async def test_check_code(client, db):
    await code_ledger.issue(db, kind="premium", external_token="PRM-CHECK")

    r = await client.get("/code/check/PRM-CHECK")
    assert r.status_code == 200
    assert r.json()["valid"] is True
    assert r.json()["code"]["kind"] == "premium"

    r = await client.get("/code/check/NOPE")
    assert r.json() == {"success": True, "valid": False, "reason": "not found", "code": None}


async def test_check_expired_code(client, db):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    await code_ledger.issue(db, kind="trial", external_token="TRL-OLD", expires_at=past)

    r = await client.get("/code/check/TRL-OLD")
    assert r.json()["valid"] is False
    assert r.json()["reason"] == "expired"
    assert r.json()["code"]["status"] == "expired"


async def test_activate_code(client, db):
    trial = (await client.post("/code/request-trial", json=TRIAL_BODY)).json()

    r = await client.post("/code/activate", json={"code": trial["trialCode"], "email": "buyer@example.com"})
    assert r.status_code == 200
    assert r.json()["code"]["status"] == "used"

    r = await client.post("/code/activate", json={"code": trial["trialCode"], "email": "buyer@example.com"})
    assert r.status_code == 400

    r = await client.post("/code/activate", json={"code": trial["trialCode"], "email": "ghost@example.com"})
    assert r.status_code == 404


async def test_deactivate_code(client, db):
    await code_ledger.issue(db, kind="premium", external_token="PRM-OFF")

    r = await client.post("/code/deactivate", json={"code": "PRM-OFF"})
    assert r.status_code == 200
    assert r.json()["code"]["status"] == "used"

    assert (await client.post("/code/deactivate", json={"code": "PRM-OFF"})).status_code == 400
    assert (await client.post("/code/deactivate", json={"code": "MISSING"})).status_code == 404


async def test_sweep_requires_admin(client, db, admin_headers):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    await code_ledger.issue(db, kind="trial", external_token="TRL-SWEEP", expires_at=past)

    assert (await client.post("/code/sweep-expired")).status_code == 403
    assert (await client.post("/code/sweep-expired", headers={"X-Admin-Key": "wrong"})).status_code == 403

    r = await client.post("/code/sweep-expired", headers=admin_headers)
    assert r.status_code == 200
    assert [c["code"] for c in r.json()["expired"]] == ["TRL-SWEEP"]
