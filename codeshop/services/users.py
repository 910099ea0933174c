from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.errors import ConflictError
from codeshop.models.user import User

logger = structlog.get_logger()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def get_by_email(db: AsyncSession, email: str) -> User | None:
    res = await db.execute(select(User).where(User.email == email))
    return res.scalar_one_or_none()


async def get_by_national_id(db: AsyncSession, national_id: str) -> User | None:
    res = await db.execute(select(User).where(User.national_id == national_id))
    return res.scalar_one_or_none()


def normalize_national_id(national_id: str | None) -> str | None:
    return (national_id or "").strip() or None


async def has_received_trial(db: AsyncSession, national_id: str) -> bool:
    national_id = normalize_national_id(national_id)
    if national_id is None:
        return False
    res = await db.execute(select(User.trial_code_received).where(User.national_id == national_id))
    return bool(res.scalar_one_or_none())


async def _find(db: AsyncSession, email: str, national_id: str | None) -> User | None:
    if national_id:
        user = await get_by_national_id(db, national_id)
        if user is not None:
            return user
    return await get_by_email(db, email)


async def get_or_create(
    db: AsyncSession,
    *,
    email: str,
    name: str | None = None,
    national_id: str | None = None,
    phone: str | None = None,
) -> User:
    """
    National ID is the identity anchor, email the fallback. Missing profile
    fields on an existing user are filled in, never overwritten.
    """
    email = email.strip().lower()
    national_id = normalize_national_id(national_id)

    user = await _find(db, email, national_id)

    if user is None:
        user = User(email=email, name=name, phone=phone, national_id=national_id, trial_code_received=False)
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # concurrent first contact for the same identity
            await db.rollback()
            user = await _find(db, email, national_id)
            if user is None:
                raise ConflictError("Email or national ID already registered")
        else:
            await db.refresh(user)
            logger.info("user_created", user_id=user.id)
            return user

    if national_id and user.national_id and user.national_id != national_id:
        raise ConflictError("Email is already registered with a different national ID")

    changed = False
    if national_id and not user.national_id:
        user.national_id = national_id
        changed = True
    if name and not user.name:
        user.name = name
        changed = True
    if phone and not user.phone:
        user.phone = phone
        changed = True

    if changed:
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise ConflictError("National ID is already registered to another email") from e
        await db.refresh(user)

    return user


async def claim_trial(db: AsyncSession, user_id: int) -> bool:
    """Flip trial_code_received false -> true. False if it was already set."""
    res = await db.execute(
        update(User)
        .where(User.id == user_id, User.trial_code_received.is_(False))
        .values(trial_code_received=True, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return res.rowcount == 1


async def release_trial(db: AsyncSession, user_id: int) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(trial_code_received=False, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
