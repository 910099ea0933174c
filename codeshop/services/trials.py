from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.errors import InvalidInputError, TrialAlreadyGrantedError
from codeshop.models.code import Code
from codeshop.services import users
from codeshop.services.token_acquisition import TokenAcquisitionGateway, issue_acquired

logger = structlog.get_logger()

ALREADY_GRANTED = "This national ID has already received a trial code. Only one trial code is issued per national ID."


async def request_trial(
    db: AsyncSession,
    token_gateway: TokenAcquisitionGateway,
    *,
    email: str,
    name_company: str,
    cccd: str,
) -> Code:
    """
    One trial code per national ID, whatever email is used.

    The trial flag is claimed with a conditional update before any token is
    acquired, so two concurrent requests cannot both pass; if issuance then
    fails the flag is released.
    """
    national_id = users.normalize_national_id(cccd)
    if national_id is None:
        raise InvalidInputError("National ID is required")

    if await users.has_received_trial(db, national_id):
        raise TrialAlreadyGrantedError(ALREADY_GRANTED)

    user = await users.get_or_create(db, email=email, name=name_company, national_id=national_id)

    if not await users.claim_trial(db, user.id):
        raise TrialAlreadyGrantedError(ALREADY_GRANTED)

    user_id = user.id
    try:
        acquired = await token_gateway.acquire("trial", name_company, email, national_id)
        code = await issue_acquired(db, kind="trial", owner_user_id=user_id, acquired=acquired)
    except Exception:
        await db.rollback()
        await users.release_trial(db, user_id)
        logger.exception("trial_issue_failed", user_id=user_id)
        raise

    logger.info("trial_issued", user_id=user_id, code_id=code.id, source=acquired.source)
    return code
