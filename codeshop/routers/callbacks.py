from __future__ import annotations

from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.config import settings
from codeshop.core.db import get_db
from codeshop.core.deps import get_reconciler
from codeshop.core.errors import NotFoundError, ReconciliationPendingError
from codeshop.schemas.callbacks import (
    CallbackStatusDetails,
    CallbackStatusOut,
    GatewayNotificationIn,
    NotifyAckOut,
)
from codeshop.services import transaction_ledger
from codeshop.services.outcome_policy import Action
from codeshop.services.reconciler import CallbackReconciler, GatewayOutcome

logger = structlog.get_logger()

router = APIRouter(prefix="/callback", tags=["Callbacks"])


def _outcome(payload: GatewayNotificationIn) -> GatewayOutcome:
    return GatewayOutcome(
        order_id=payload.order_id,
        result_code=payload.result_code,
        trans_id=payload.trans_id,
        message=payload.message,
        amount=payload.amount,
    )


def _portal_redirect(path: str, params: dict) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(f"{settings.ADMIN_PORTAL_URL}/{path}?{query}", status_code=302)


def _error_redirect(error: str, message: str | None = None) -> RedirectResponse:
    return _portal_redirect("payment-error", {"error": error, "message": message})


# -------------------------
# Notification transport (server-to-server)
# -------------------------
@router.post("/notify")
async def gateway_notify(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
):
    try:
        payload = GatewayNotificationIn.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.warning("notify_invalid_payload", error=str(e))
        return JSONResponse(status_code=400, content={"status": "error", "message": "Invalid notification"})

    structlog.contextvars.bind_contextvars(order_id=payload.order_id)

    try:
        result = await reconciler.reconcile(db, _outcome(payload))
    except NotFoundError:
        return JSONResponse(status_code=404, content={"status": "error", "message": "Transaction not found"})
    except ReconciliationPendingError as e:
        return JSONResponse(status_code=409, content={"status": "error", "message": str(e)})
    except Exception as e:
        logger.exception("notify_processing_error", order_id=payload.order_id)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Processing error", "error": str(e)},
        )

    if result.action is Action.ISSUE:
        ack = NotifyAckOut(
            status="success",
            message="Payment processed successfully",
            orderId=result.order_id,
            code=result.code.code,
        )
    elif result.action is Action.HOLD:
        ack = NotifyAckOut(status="pending", message=f"Payment {result.reason}", orderId=result.order_id)
    else:
        ack = NotifyAckOut(status="failed", message=f"Payment {result.reason}", orderId=result.order_id)

    return JSONResponse(status_code=200, content=ack.model_dump(exclude_none=True))


# -------------------------
# Redirect transport (browser)
# -------------------------
@router.get("/redirect")
async def gateway_redirect(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
):
    try:
        payload = GatewayNotificationIn.model_validate(dict(request.query_params))
    except ValidationError:
        return _error_redirect("invalid_request")

    structlog.contextvars.bind_contextvars(order_id=payload.order_id)

    try:
        result = await reconciler.reconcile(db, _outcome(payload))
    except NotFoundError:
        return _error_redirect("transaction_not_found")
    except ReconciliationPendingError:
        return _error_redirect("processing", payload.order_id)
    except Exception as e:
        logger.exception("redirect_processing_error", order_id=payload.order_id)
        return _error_redirect("processing_error", str(e))

    if result.action is Action.HOLD:
        return _error_redirect("payment_pending", result.reason)
    if result.action is Action.REJECT:
        return _error_redirect("payment_failed", result.reason)

    return _portal_redirect(
        "payment-success",
        {
            "orderId": result.order_id,
            "transId": payload.trans_id or "",
            "amount": payload.amount or "",
            "code": result.code.code,
        },
    )


@router.get("/status/{order_id}", response_model=CallbackStatusOut)
async def callback_status(order_id: str, db: AsyncSession = Depends(get_db)):
    txn = await transaction_ledger.by_order_id(db, order_id)
    if txn is None:
        return JSONResponse(
            status_code=404,
            content={
                "success": False,
                "message": "Transaction not found",
                "callbackReceived": False,
                "status": "not_found",
            },
        )

    return CallbackStatusOut(
        orderId=txn.order_id,
        callbackReceived=txn.status != "pending" or txn.result_code is not None,
        status=txn.status,
        paymentData=txn.payment_data,
        createdAt=txn.created_at,
        updatedAt=txn.updated_at,
        details=CallbackStatusDetails(
            transId=txn.trans_id,
            resultCode=txn.result_code,
            message=txn.message,
            codeId=txn.code_id,
        ),
    )
