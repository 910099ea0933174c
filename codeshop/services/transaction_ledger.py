from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.errors import ConflictError, InvalidStateError, NotFoundError
from codeshop.models.transaction import TRANSACTION_STATUSES, Transaction

logger = structlog.get_logger()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def open_transaction(
    db: AsyncSession,
    *,
    order_id: str,
    user_id: int | None,
    amount: Decimal | int,
    currency: str = "VND",
    gateway: str = "momo",
    payment_data: dict | None = None,
    payment_method: str | None = None,
) -> Transaction:
    txn = Transaction(
        order_id=order_id,
        user_id=user_id,
        code_id=None,
        amount=Decimal(amount),
        currency=currency,
        payment_gateway=gateway,
        payment_method=payment_method,
        status="pending",
        payment_data=payment_data,
    )
    db.add(txn)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError(f"Transaction {order_id} already exists") from e

    await db.refresh(txn)
    logger.info("transaction_opened", order_id=order_id, user_id=user_id, amount=str(txn.amount))
    return txn


async def by_order_id(db: AsyncSession, order_id: str) -> Transaction | None:
    res = await db.execute(
        select(Transaction).where(Transaction.order_id == order_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def _require(db: AsyncSession, order_id: str) -> Transaction:
    txn = await by_order_id(db, order_id)
    if txn is None:
        raise NotFoundError("Transaction not found")
    return txn


async def advance(
    db: AsyncSession,
    order_id: str,
    status: str,
    *,
    trans_id: str | None = None,
    result_code: str | None = None,
    message: str | None = None,
) -> Transaction:
    """
    Move a transaction to `status`. Supplied gateway fields overwrite, absent
    ones are left untouched. Re-applying the same status is a no-op in state.
    A transaction that left pending never goes back to pending.
    """
    if status not in TRANSACTION_STATUSES:
        raise ValueError(f"Unknown transaction status: {status}")

    values: dict = {"status": status, "updated_at": _now_utc()}
    if trans_id is not None:
        values["trans_id"] = str(trans_id)
    if result_code is not None:
        values["result_code"] = str(result_code)
    if message is not None:
        values["message"] = message

    stmt = update(Transaction).where(Transaction.order_id == order_id)
    if status == "pending":
        stmt = stmt.where(Transaction.status == "pending")

    res = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if res.rowcount != 1:
        await db.rollback()
        txn = await _require(db, order_id)
        raise InvalidStateError(f"Transaction is already {txn.status}")

    await db.commit()
    return await _require(db, order_id)


async def link_code(db: AsyncSession, order_id: str, code_id: int) -> Transaction:
    """Unconditional link. Reconciliation goes through link_code_if_absent."""
    res = await db.execute(
        update(Transaction)
        .where(Transaction.order_id == order_id)
        .values(code_id=code_id, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await db.rollback()
        raise NotFoundError("Transaction not found")
    await db.commit()
    return await _require(db, order_id)


async def link_code_if_absent(db: AsyncSession, order_id: str, code_id: int) -> Transaction:
    """
    Compare-and-set on code_id IS NULL. The first caller wins; later callers
    get the transaction back with the already-linked code untouched.
    """
    res = await db.execute(
        update(Transaction)
        .where(Transaction.order_id == order_id, Transaction.code_id.is_(None))
        .values(code_id=code_id, claim_token=None, claimed_at=None, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    txn = await _require(db, order_id)
    if res.rowcount == 1:
        logger.info("transaction_code_linked", order_id=order_id, code_id=code_id)
    else:
        logger.info("transaction_code_already_linked", order_id=order_id, code_id=txn.code_id, rejected_code_id=code_id)
    return txn


async def claim_for_issuance(db: AsyncSession, order_id: str, *, lease_seconds: int) -> str | None:
    """
    Claim the right to mint this order's code.

    Succeeds only while no code is linked and nobody holds a live claim; an
    expired lease can be taken over. Returns the claim token, or None.
    """
    now = _now_utc()
    token = uuid4().hex
    res = await db.execute(
        update(Transaction)
        .where(
            Transaction.order_id == order_id,
            Transaction.code_id.is_(None),
            or_(
                Transaction.claimed_at.is_(None),
                Transaction.claimed_at < now - timedelta(seconds=lease_seconds),
            ),
        )
        .values(claim_token=token, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return token if res.rowcount == 1 else None


async def release_claim(db: AsyncSession, order_id: str, claim_token: str) -> None:
    await db.execute(
        update(Transaction)
        .where(
            and_(
                Transaction.order_id == order_id,
                Transaction.claim_token == claim_token,
                Transaction.code_id.is_(None),
            )
        )
        .values(claim_token=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def linked_code_id(db: AsyncSession, order_id: str) -> int | None:
    res = await db.execute(select(Transaction.code_id).where(Transaction.order_id == order_id))
    return res.scalar_one_or_none()


async def list_for_user(db: AsyncSession, user_id: int) -> list[Transaction]:
    res = await db.execute(
        select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.created_at.desc())
    )
    return list(res.scalars().all())
