import secrets
import time

import httpx

from codeshop.core.config import settings
from codeshop.core.errors import PaymentGatewayError
from codeshop.core.security import raw_signature, sign


class MomoClient:
    """MoMo wallet payment initiation (captureWallet)."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.endpoint = settings.MOMO_ENDPOINT.rstrip("/")
        self.partner_code = settings.MOMO_PARTNER_CODE
        self.access_key = settings.MOMO_ACCESS_KEY
        self.secret_key = settings.MOMO_SECRET_KEY
        self.timeout = settings.MOMO_TIMEOUT_SECONDS
        self.transport = transport

    def new_order_id(self) -> str:
        # partner code + epoch ms, plus entropy so two requests in the same ms differ
        return f"{self.partner_code}{int(time.time() * 1000)}{secrets.token_hex(2).upper()}"

    def build_request(self, *, order_id: str, amount: int, redirect_url: str, ipn_url: str) -> dict:
        fields = {
            "partnerCode": self.partner_code,
            "accessKey": self.access_key,
            "requestId": order_id,
            "amount": str(amount),
            "orderId": order_id,
            "orderInfo": settings.MOMO_ORDER_INFO,
            "redirectUrl": redirect_url,
            "ipnUrl": ipn_url,
            "extraData": "",
            "requestType": settings.MOMO_REQUEST_TYPE,
        }
        fields["signature"] = sign(raw_signature(fields), self.secret_key)
        fields["lang"] = "vi"
        return fields

    async def create_payment(self, request_body: dict) -> str:
        """POST /create and return the payUrl."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(f"{self.endpoint}/create", json=request_body)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"MoMo unreachable: {e}") from e

        try:
            data = r.json()
        except ValueError as e:
            raise PaymentGatewayError(f"MoMo returned non-JSON body ({r.status_code})") from e

        pay_url = data.get("payUrl") if isinstance(data, dict) else None
        if not pay_url:
            message = data.get("message") if isinstance(data, dict) else None
            raise PaymentGatewayError(f"MoMo payment URL not received: {message or r.status_code}")
        return pay_url
