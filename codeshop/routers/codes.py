# codeshop/routers/codes.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.db import get_db
from codeshop.core.deps import get_dispatcher, get_momo_client, get_token_gateway, require_admin
from codeshop.core.errors import NotFoundError
from codeshop.integrations.momo_client import MomoClient
from codeshop.schemas.codes import (
    CodeActionOut,
    CodeActivateIn,
    CodeCheckOut,
    CodeDeactivateIn,
    CodeOut,
    CodeRequestIn,
    PremiumOut,
    SweepOut,
    TrialOut,
)
from codeshop.services import code_ledger, users
from codeshop.services.notifications import NotificationDispatcher, TrialCodeNotice
from codeshop.services.payments import request_premium
from codeshop.services.token_acquisition import TokenAcquisitionGateway
from codeshop.services.trials import request_trial

router = APIRouter(prefix="/code", tags=["Codes"])


@router.post("/request-trial", response_model=TrialOut)
async def request_trial_code(
    body: CodeRequestIn,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    token_gateway: TokenAcquisitionGateway = Depends(get_token_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    code = await request_trial(
        db,
        token_gateway,
        email=body.email,
        name_company=body.name_company,
        cccd=body.cccd,
    )

    background_tasks.add_task(
        dispatcher.send_trial_code,
        TrialCodeNotice(email=body.email, name_company=body.name_company, code=code.code, expires_at=code.expires_at),
    )

    return TrialOut(
        message="Your trial code has been sent to your email.",
        trialCode=code.code,
        expiryDate=code.expires_at,
    )


@router.post("/request-premium", response_model=PremiumOut)
async def request_premium_code(
    body: CodeRequestIn,
    db: AsyncSession = Depends(get_db),
    momo: MomoClient = Depends(get_momo_client),
):
    initiation = await request_premium(
        db,
        momo,
        email=body.email,
        name_company=body.name_company,
        cccd=body.cccd,
    )
    return PremiumOut(
        message="Redirecting to the payment page...",
        paymentUrl=initiation.payment_url,
        orderId=initiation.order_id,
    )


@router.get("/check/{code}", response_model=CodeCheckOut)
async def check_code(code: str, db: AsyncSession = Depends(get_db)):
    result = await code_ledger.validate(db, code)
    return CodeCheckOut(
        valid=result.valid,
        reason=result.reason,
        code=CodeOut.model_validate(result.code) if result.code is not None else None,
    )


@router.post("/activate", response_model=CodeActionOut)
async def activate_code(body: CodeActivateIn, db: AsyncSession = Depends(get_db)):
    user = await users.get_by_email(db, body.email.strip().lower())
    if user is None:
        raise NotFoundError("User not found")

    code = await code_ledger.activate(db, body.code, user.id)
    return CodeActionOut(message="Code activated successfully", code=CodeOut.model_validate(code))


@router.post("/deactivate", response_model=CodeActionOut)
async def deactivate_code(body: CodeDeactivateIn, db: AsyncSession = Depends(get_db)):
    code = await code_ledger.deactivate(db, body.code)
    return CodeActionOut(message="Code deactivated successfully", code=CodeOut.model_validate(code))


@router.post("/sweep-expired", response_model=SweepOut, dependencies=[Depends(require_admin)])
async def sweep_expired_codes(db: AsyncSession = Depends(get_db)):
    expired = await code_ledger.sweep_expired(db)
    return SweepOut(expired=[CodeOut.model_validate(c) for c in expired])
