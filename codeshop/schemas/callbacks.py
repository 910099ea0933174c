from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GatewayNotificationIn(BaseModel):
    """Payment outcome as posted by the gateway (notification transport)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_id: str = Field(alias="orderId", min_length=1, max_length=100)
    result_code: str | None = Field(default=None, alias="resultCode")
    message: str | None = None
    trans_id: str | None = Field(default=None, alias="transId")
    amount: str | None = None

    @field_validator("result_code", "trans_id", "amount", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str | None:
        # MoMo sends numbers for these
        if v is None:
            return None
        return str(v)


class NotifyAckOut(BaseModel):
    status: str
    message: str
    orderId: str
    code: str | None = None


class CallbackStatusDetails(BaseModel):
    transId: str | None
    resultCode: str | None
    message: str | None
    codeId: int | None


class CallbackStatusOut(BaseModel):
    success: bool = True
    orderId: str
    callbackReceived: bool
    status: str
    paymentData: dict | None
    createdAt: datetime | None
    updatedAt: datetime | None
    details: CallbackStatusDetails
