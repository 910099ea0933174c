# codeshop/schemas/codes.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CodeRequestIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    name_company: str = Field(alias="nameCompany", min_length=1, max_length=255)
    cccd: str = Field(min_length=1, max_length=20)


class CodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    kind: str
    status: str
    user_id: int | None
    expires_at: datetime | None
    activated_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class TrialOut(BaseModel):
    success: bool = True
    message: str
    trialCode: str
    expiryDate: datetime | None


class PremiumOut(BaseModel):
    success: bool = True
    message: str
    paymentUrl: str
    orderId: str


class CodeCheckOut(BaseModel):
    success: bool = True
    valid: bool
    reason: str
    code: CodeOut | None


class CodeDeactivateIn(BaseModel):
    code: str = Field(min_length=1, max_length=100)


class CodeActivateIn(BaseModel):
    code: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)


class CodeActionOut(BaseModel):
    success: bool = True
    message: str
    code: CodeOut


class SweepOut(BaseModel):
    success: bool = True
    expired: list[CodeOut] = Field(default_factory=list)
