from __future__ import annotations

import hashlib
import hmac

# MoMo signs the create request over these keys, in this order.
MOMO_CREATE_SIGNATURE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)


# -------------------------
# Gateway request signing
# -------------------------
def raw_signature(fields: dict, order: tuple[str, ...] = MOMO_CREATE_SIGNATURE_FIELDS) -> str:
    return "&".join(f"{key}={fields.get(key, '')}" for key in order)


def sign(raw: str, secret_key: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


# -------------------------
# Admin key
# -------------------------
def admin_key_matches(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
