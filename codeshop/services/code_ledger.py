# codeshop/services/code_ledger.py
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.config import settings
from codeshop.core.errors import ConflictError, InvalidStateError, NotFoundError
from codeshop.models.code import CODE_KINDS, Code

logger = structlog.get_logger()


@dataclass
class Validation:
    valid: bool
    reason: str
    code: Code | None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    # some drivers (sqlite) hand back naive datetimes even for timezone=True columns
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_past_expiry(code: Code, now: datetime | None = None) -> bool:
    expires_at = _as_utc(code.expires_at)
    return expires_at is not None and expires_at < (now or _now_utc())


def generate_code() -> str:
    # XXXX-XXXX-XXXX-XXXX, four segments of two random bytes
    return "-".join(secrets.token_hex(2).upper() for _ in range(4))


def trial_expiry(now: datetime | None = None) -> datetime:
    return (now or _now_utc()) + timedelta(days=settings.TRIAL_EXPIRY_DAYS)


async def _insert(db: AsyncSession, code: Code) -> Code:
    value = code.code
    db.add(code)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError(f"Code {value} already exists") from e
    await db.refresh(code)
    return code


async def issue(
    db: AsyncSession,
    *,
    kind: str,
    owner_user_id: int | None = None,
    external_token: str | None = None,
    expires_at: datetime | None = None,
) -> Code:
    """
    Persist a new active code.

    external_token is used verbatim and a collision raises ConflictError.
    Without one, a random code is drawn and collisions are redrawn up to
    CODE_GENERATION_ATTEMPTS times.

    Trial codes get TRIAL_EXPIRY_DAYS when no expiry is given; premium codes
    never expire.
    """
    if kind not in CODE_KINDS:
        raise ValueError(f"Unknown code kind: {kind}")

    if kind == "trial" and expires_at is None:
        expires_at = trial_expiry()
    if kind == "premium":
        expires_at = None

    if external_token:
        code = await _insert(
            db,
            Code(code=external_token, kind=kind, status="active", user_id=owner_user_id, expires_at=expires_at),
        )
        logger.info("code_issued", code_id=code.id, kind=kind, external=True)
        return code

    attempts = max(1, int(settings.CODE_GENERATION_ATTEMPTS))
    for attempt in range(attempts):
        try:
            code = await _insert(
                db,
                Code(code=generate_code(), kind=kind, status="active", user_id=owner_user_id, expires_at=expires_at),
            )
        except ConflictError:
            logger.warning("code_collision", kind=kind, attempt=attempt + 1)
            continue
        logger.info("code_issued", code_id=code.id, kind=kind, external=False)
        return code

    raise ConflictError("Failed to generate unique code.")


async def lookup(db: AsyncSession, code_string: str) -> Code | None:
    res = await db.execute(select(Code).where(Code.code == code_string))
    return res.scalar_one_or_none()


async def get_by_id(db: AsyncSession, code_id: int) -> Code | None:
    res = await db.execute(select(Code).where(Code.id == code_id).execution_options(populate_existing=True))
    return res.scalar_one_or_none()


async def _require(db: AsyncSession, code_string: str) -> Code:
    code = await lookup(db, code_string)
    if code is None:
        raise NotFoundError("Code not found")
    return code


async def _mark_expired(db: AsyncSession, code: Code) -> None:
    # Only an active code can flip; a concurrent flip is harmless.
    await db.execute(
        update(Code)
        .where(Code.id == code.id, Code.status == "active")
        .values(status="expired", updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(code)
    logger.info("code_expired", code_id=code.id)


async def validate(db: AsyncSession, code_string: str) -> Validation:
    """
    Check a code. NOT read-only: an active code past its expiry is flipped to
    expired as part of the check.
    """
    code = await lookup(db, code_string)
    if code is None:
        return Validation(valid=False, reason="not found", code=None)

    if code.status != "active":
        return Validation(valid=False, reason=code.status, code=code)

    if is_past_expiry(code):
        await _mark_expired(db, code)
        return Validation(valid=False, reason="expired", code=code)

    return Validation(valid=True, reason="valid", code=code)


async def activate(db: AsyncSession, code_string: str, user_id: int) -> Code:
    code = await _require(db, code_string)

    if code.status != "active":
        raise InvalidStateError(f"Code is {code.status}")

    if is_past_expiry(code):
        await _mark_expired(db, code)
        raise InvalidStateError("Code has expired")

    res = await db.execute(
        update(Code)
        .where(Code.id == code.id, Code.status == "active")
        .values(status="used", user_id=user_id, activated_at=_now_utc(), updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await db.rollback()
        await db.refresh(code)
        raise InvalidStateError(f"Code is {code.status}")

    await db.commit()
    await db.refresh(code)
    logger.info("code_activated", code_id=code.id, user_id=user_id)
    return code


async def deactivate(db: AsyncSession, code_string: str) -> Code:
    """Administrative revoke: active -> used, without an activation."""
    code = await _require(db, code_string)

    if code.status != "active":
        raise InvalidStateError(f"Code is already {code.status}")

    res = await db.execute(
        update(Code)
        .where(Code.id == code.id, Code.status == "active")
        .values(status="used", updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await db.rollback()
        await db.refresh(code)
        raise InvalidStateError(f"Code is already {code.status}")

    await db.commit()
    await db.refresh(code)
    logger.info("code_deactivated", code_id=code.id)
    return code


async def sweep_expired(db: AsyncSession) -> list[Code]:
    """Bulk active -> expired for every code whose expiry has passed."""
    now = _now_utc()
    res = await db.execute(
        select(Code.id).where(
            Code.status == "active",
            Code.expires_at.is_not(None),
            Code.expires_at < now,
        )
    )
    ids = [int(x) for x in res.scalars().all()]
    if not ids:
        return []

    await db.execute(
        update(Code)
        .where(Code.id.in_(ids), Code.status == "active")
        .values(status="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    res2 = await db.execute(
        select(Code).where(Code.id.in_(ids)).order_by(Code.id).execution_options(populate_existing=True)
    )
    expired = list(res2.scalars().all())
    logger.info("codes_swept", count=len(expired))
    return expired


async def list_for_user(db: AsyncSession, user_id: int) -> list[Code]:
    res = await db.execute(select(Code).where(Code.user_id == user_id).order_by(Code.created_at.desc()))
    return list(res.scalars().all())
