from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.config import settings
from codeshop.core.errors import PaymentGatewayError
from codeshop.integrations.momo_client import MomoClient
from codeshop.services import transaction_ledger, users

logger = structlog.get_logger()


@dataclass
class PaymentInitiation:
    order_id: str
    payment_url: str
    amount: int


async def request_premium(
    db: AsyncSession,
    momo: MomoClient,
    *,
    email: str,
    name_company: str,
    cccd: str,
) -> PaymentInitiation:
    """
    Open a pending transaction carrying the request context, then ask the
    gateway for a payment URL. A gateway failure marks the transaction failed.
    """
    user = await users.get_or_create(db, email=email, name=name_company, national_id=cccd)

    amount = int(settings.PREMIUM_PRICE)
    order_id = momo.new_order_id()
    await transaction_ledger.open_transaction(
        db,
        order_id=order_id,
        user_id=user.id,
        amount=amount,
        currency="VND",
        gateway="momo",
        payment_data={
            "productType": "premium",
            "email": email,
            "nameCompany": name_company,
            "cccd": cccd,
        },
    )

    request_body = momo.build_request(
        order_id=order_id,
        amount=amount,
        redirect_url=settings.callback_redirect_url,
        ipn_url=settings.callback_notify_url,
    )

    try:
        pay_url = await momo.create_payment(request_body)
    except PaymentGatewayError as e:
        logger.warning("payment_initiation_failed", order_id=order_id, error=str(e))
        await transaction_ledger.advance(db, order_id, "failed", message=str(e))
        raise

    logger.info("payment_initiated", order_id=order_id, user_id=user.id, amount=amount)
    return PaymentInitiation(order_id=order_id, payment_url=pay_url, amount=amount)
