"""Map a gateway result code to what reconciliation does with the order."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Action(str, Enum):
    ISSUE = "issue"
    REJECT = "reject"
    HOLD = "hold"


@dataclass(frozen=True)
class Decision:
    action: Action
    # transaction status to record; None keeps the current status (hold)
    status: str | None
    reason: str


MOMO_SUCCESS = "0"

# MoMo resultCode table (strict mode)
STRICT_TABLE: dict[str, Decision] = {
    MOMO_SUCCESS: Decision(Action.ISSUE, "success", "paid"),
    "9000": Decision(Action.HOLD, None, "authorized, awaiting capture"),
    "7000": Decision(Action.HOLD, None, "processing"),
    "7002": Decision(Action.HOLD, None, "processing by provider"),
    "1000": Decision(Action.HOLD, None, "awaiting user confirmation"),
    "1003": Decision(Action.REJECT, "cancelled", "cancelled"),
    "1006": Decision(Action.REJECT, "cancelled", "denied by user"),
    "1017": Decision(Action.REJECT, "cancelled", "cancelled by partner"),
}

STRICT_DEFAULT = Decision(Action.REJECT, "failed", "payment failed")

ALWAYS_SUCCEED = Decision(Action.ISSUE, "success", "test mode")

POLICY_STRICT = "strict"
POLICY_ALWAYS_SUCCEED = "always_succeed"


def _normalize(result_code) -> str:
    if result_code is None:
        return ""
    return str(result_code).strip()


class OutcomePolicy:
    def __init__(self, mode: str = POLICY_STRICT, table: dict[str, Decision] | None = None):
        if mode not in (POLICY_STRICT, POLICY_ALWAYS_SUCCEED):
            raise ValueError(f"Unknown reconcile policy: {mode}")
        self.mode = mode
        self.table = STRICT_TABLE if table is None else table

    def decide(self, result_code) -> Decision:
        if self.mode == POLICY_ALWAYS_SUCCEED:
            return ALWAYS_SUCCEED
        return self.table.get(_normalize(result_code), STRICT_DEFAULT)
