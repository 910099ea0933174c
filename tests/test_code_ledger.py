"""Code ledger: issuance, validation with lazy expiry, activation and sweep."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest

from codeshop.core.config import settings
from codeshop.core.errors import ConflictError, InvalidStateError, NotFoundError
from codeshop.services import code_ledger, users


def _past() -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=1)


def test_generate_code_format():
    code = code_ledger.generate_code()
    assert re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}", code)


async def test_issue_trial_defaults_expiry(db):
    before = datetime.now(timezone.utc)
    code = await code_ledger.issue(db, kind="trial")

    assert code.status == "active"
    assert code.kind == "trial"
    expires_at = code_ledger._as_utc(code.expires_at)
    assert expires_at >= before + timedelta(days=settings.TRIAL_EXPIRY_DAYS) - timedelta(seconds=5)


async def test_issue_premium_never_expires(db):
    code = await code_ledger.issue(db, kind="premium", expires_at=datetime.now(timezone.utc))
    assert code.expires_at is None


async def test_issue_external_token_verbatim(db):
    code = await code_ledger.issue(db, kind="premium", external_token="UPSTREAM-TOKEN-1")
    assert code.code == "UPSTREAM-TOKEN-1"


async def test_issue_external_token_collision_conflicts(db):
    await code_ledger.issue(db, kind="premium", external_token="DUP-1")
    with pytest.raises(ConflictError):
        await code_ledger.issue(db, kind="trial", external_token="DUP-1")


async def test_issue_generated_code_redraws_on_collision(db, monkeypatch):
    await code_ledger.issue(db, kind="premium", external_token="AAAA-AAAA-AAAA-AAAA")

    draws = iter(["AAAA-AAAA-AAAA-AAAA", "BBBB-BBBB-BBBB-BBBB"])
    monkeypatch.setattr(code_ledger, "generate_code", lambda: next(draws))

    code = await code_ledger.issue(db, kind="premium")
    assert code.code == "BBBB-BBBB-BBBB-BBBB"


async def test_issue_gives_up_after_bounded_attempts(db, monkeypatch):
    await code_ledger.issue(db, kind="premium", external_token="SAME-SAME")
    monkeypatch.setattr(code_ledger, "generate_code", lambda: "SAME-SAME")
    monkeypatch.setattr(settings, "CODE_GENERATION_ATTEMPTS", 2)

    with pytest.raises(ConflictError):
        await code_ledger.issue(db, kind="premium")


async def test_issue_rejects_unknown_kind(db):
    with pytest.raises(ValueError):
        await code_ledger.issue(db, kind="lifetime")


async def test_validate_unknown_code(db):
    result = await code_ledger.validate(db, "NOPE")
    assert result.valid is False
    assert result.reason == "not found"
    assert result.code is None


async def test_validate_active_code(db):
    await code_ledger.issue(db, kind="trial", external_token="TRL-OK")
    result = await code_ledger.validate(db, "TRL-OK")
    assert result.valid is True
    assert result.reason == "valid"


async def test_validate_flips_expired_code(db):
    await code_ledger.issue(db, kind="trial", external_token="TRL-OLD", expires_at=_past())

    first = await code_ledger.validate(db, "TRL-OLD")
    assert first.valid is False
    assert first.reason == "expired"
    assert first.code.status == "expired"

    # already flipped, reported by status from now on
    second = await code_ledger.validate(db, "TRL-OLD")
    assert second.valid is False
    assert second.reason == "expired"


async def test_activate_marks_used_and_binds_user(db):
    user = await users.get_or_create(db, email="a@example.com", national_id="001")
    await code_ledger.issue(db, kind="premium", external_token="PRM-1")

    code = await code_ledger.activate(db, "PRM-1", user.id)
    assert code.status == "used"
    assert code.user_id == user.id
    assert code.activated_at is not None

    with pytest.raises(InvalidStateError):
        await code_ledger.activate(db, "PRM-1", user.id)


async def test_activate_expired_code_fails_and_flips(db):
    user = await users.get_or_create(db, email="a@example.com", national_id="001")
    await code_ledger.issue(db, kind="trial", external_token="TRL-LATE", expires_at=_past())

    with pytest.raises(InvalidStateError):
        await code_ledger.activate(db, "TRL-LATE", user.id)

    code = await code_ledger.lookup(db, "TRL-LATE")
    assert code.status == "expired"


async def test_activate_unknown_code(db):
    with pytest.raises(NotFoundError):
        await code_ledger.activate(db, "MISSING", 1)


async def test_deactivate_only_active_codes(db):
    await code_ledger.issue(db, kind="premium", external_token="PRM-2")

    code = await code_ledger.deactivate(db, "PRM-2")
    assert code.status == "used"
    assert code.activated_at is None

    with pytest.raises(InvalidStateError):
        await code_ledger.deactivate(db, "PRM-2")

    with pytest.raises(NotFoundError):
        await code_ledger.deactivate(db, "MISSING")


async def test_sweep_expired_only_touches_past_active_codes(db):
    await code_ledger.issue(db, kind="trial", external_token="TRL-A", expires_at=_past())
    await code_ledger.issue(db, kind="trial", external_token="TRL-B")
    await code_ledger.issue(db, kind="premium", external_token="PRM-C")

    expired = await code_ledger.sweep_expired(db)
    assert [c.code for c in expired] == ["TRL-A"]
    assert expired[0].status == "expired"

    assert await code_ledger.sweep_expired(db) == []
    assert (await code_ledger.lookup(db, "TRL-B")).status == "active"
    assert (await code_ledger.lookup(db, "PRM-C")).status == "active"


async def test_list_for_user(db):
    user = await users.get_or_create(db, email="owner@example.com", national_id="009")
    await code_ledger.issue(db, kind="trial", owner_user_id=user.id, external_token="TRL-MINE")
    await code_ledger.issue(db, kind="premium", external_token="PRM-OTHER")

    listed = await code_ledger.list_for_user(db, user.id)
    assert [c.code for c in listed] == ["TRL-MINE"]
