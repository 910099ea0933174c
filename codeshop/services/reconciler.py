"""
Callback reconciliation.

The wallet gateway reports a payment outcome through two transports: the
server-to-server notification (at-least-once) and the browser redirect
(at-most-once). Either, both or neither may arrive, in any order and possibly
at the same time. Both feed CallbackReconciler.reconcile(), which guarantees
at most one code per order:

  1. an already-linked order replays its code without touching the gateway;
  2. the outcome policy decides issue / reject / hold from the result code;
  3. issuing requires winning claim_for_issuance (conditional UPDATE); a
     concurrent delivery that loses the claim waits for the winner's link
     and returns the same code;
  4. the winner acquires a token, issues the code and links it through
     link_code_if_absent (compare-and-set on code_id IS NULL).

Email is handed to the `notify` hook after the link commits and never
affects the result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.config import settings
from codeshop.core.errors import InvalidStateError, NotFoundError, ReconciliationPendingError
from codeshop.models.code import CODE_KINDS, Code
from codeshop.models.transaction import Transaction
from codeshop.services import code_ledger, transaction_ledger
from codeshop.services.notifications import PremiumCodeNotice, TrialCodeNotice
from codeshop.services.outcome_policy import Action, OutcomePolicy
from codeshop.services.token_acquisition import TokenAcquisitionGateway, issue_acquired

logger = structlog.get_logger()

Notify = Callable[[PremiumCodeNotice | TrialCodeNotice], None]


@dataclass
class GatewayOutcome:
    order_id: str
    result_code: str | None = None
    trans_id: str | None = None
    message: str | None = None
    amount: str | None = None


@dataclass
class ReconcileResult:
    order_id: str
    action: Action
    status: str
    code: Code | None = None
    replayed: bool = False
    reason: str = ""


def product_kind(payment_data: dict | None) -> str:
    kind = (payment_data or {}).get("productType") or "premium"
    return kind if kind in CODE_KINDS else "premium"


class CallbackReconciler:
    def __init__(
        self,
        token_gateway: TokenAcquisitionGateway,
        policy: OutcomePolicy,
        *,
        notify: Notify | None = None,
        claim_lease_seconds: int | None = None,
        wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ):
        self.token_gateway = token_gateway
        self.policy = policy
        self.notify = notify
        self.claim_lease_seconds = (
            settings.RECONCILE_CLAIM_LEASE_SECONDS if claim_lease_seconds is None else claim_lease_seconds
        )
        self.wait_seconds = settings.RECONCILE_WAIT_SECONDS if wait_seconds is None else wait_seconds
        self.poll_interval_seconds = (
            settings.RECONCILE_POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
        )

    async def reconcile(self, db: AsyncSession, outcome: GatewayOutcome) -> ReconcileResult:
        order_id = outcome.order_id
        log = logger.bind(order_id=order_id, result_code=outcome.result_code)

        txn = await transaction_ledger.by_order_id(db, order_id)
        if txn is None:
            log.warning("reconcile_unknown_order")
            raise NotFoundError("Transaction not found")

        if txn.code_id is not None:
            code = await self._linked_code(db, txn.code_id)
            log.info("reconcile_replayed", code_id=code.id)
            return ReconcileResult(order_id, Action.ISSUE, txn.status, code=code, replayed=True, reason="already issued")

        decision = self.policy.decide(outcome.result_code)
        fields = {
            "trans_id": outcome.trans_id,
            "result_code": outcome.result_code,
            "message": outcome.message,
        }

        if decision.action is Action.HOLD:
            txn = await transaction_ledger.advance(db, order_id, txn.status, **fields)
            log.info("reconcile_held", reason=decision.reason)
            return ReconcileResult(order_id, Action.HOLD, txn.status, reason=decision.reason)

        if decision.action is Action.REJECT and txn.status != "success":
            txn = await transaction_ledger.advance(db, order_id, decision.status, **fields)
            log.info("reconcile_rejected", status=txn.status, reason=decision.reason)
            return ReconcileResult(order_id, Action.REJECT, txn.status, reason=decision.reason)

        if txn.status == "refunded":
            raise InvalidStateError("Transaction is already refunded")

        reason = decision.reason
        if decision.action is Action.REJECT:
            # a late failure report never downgrades a paid order; finish its issuance instead
            log.warning("reconcile_reject_on_paid_order", result_code=outcome.result_code)
            reason = "already paid"
        else:
            txn = await transaction_ledger.advance(db, order_id, "success", **fields)
        code, replayed = await self._issue_once(db, txn, log)

        if not replayed:
            self._dispatch(txn, code, outcome)

        return ReconcileResult(
            order_id,
            Action.ISSUE,
            "success",
            code=code,
            replayed=replayed,
            reason="already issued" if replayed else reason,
        )

    async def _linked_code(self, db: AsyncSession, code_id: int) -> Code:
        code = await code_ledger.get_by_id(db, code_id)
        if code is None:
            raise NotFoundError("Linked code not found")
        return code

    async def _issue_once(self, db: AsyncSession, txn: Transaction, log) -> tuple[Code, bool]:
        """Return (code, replayed). Only the claim holder mints."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds

        while True:
            claim = await transaction_ledger.claim_for_issuance(
                db, txn.order_id, lease_seconds=self.claim_lease_seconds
            )
            if claim is not None:
                return await self._mint_and_link(db, txn, claim, log)

            code_id = await transaction_ledger.linked_code_id(db, txn.order_id)
            if code_id is not None:
                code = await self._linked_code(db, code_id)
                log.info("reconcile_joined_concurrent_issue", code_id=code.id)
                return code, True

            if loop.time() >= deadline:
                log.warning("reconcile_claim_wait_timeout", wait_seconds=self.wait_seconds)
                raise ReconciliationPendingError("Order is being processed, retry later")

            await asyncio.sleep(self.poll_interval_seconds)

    async def _mint_and_link(self, db: AsyncSession, txn: Transaction, claim: str, log) -> tuple[Code, bool]:
        # a rollback expires txn, so keep what the failure path needs
        order_id = txn.order_id
        try:
            ctx = txn.payment_data or {}
            kind = product_kind(ctx)
            acquired = await self.token_gateway.acquire(kind, ctx.get("nameCompany"), ctx.get("email"), ctx.get("cccd"))
            log.info("reconcile_token_acquired", source=acquired.source, upstream_error=acquired.error)
            code = await issue_acquired(db, kind=kind, owner_user_id=txn.user_id, acquired=acquired)
        except Exception:
            await db.rollback()
            await transaction_ledger.release_claim(db, order_id, claim)
            log.exception("reconcile_issue_failed")
            raise

        linked = await transaction_ledger.link_code_if_absent(db, order_id, code.id)
        if linked.code_id == code.id:
            log.info("reconcile_issued", code_id=code.id, kind=code.kind)
            return code, False

        # Our lease lapsed and another delivery linked first; retire the orphan.
        log.warning("reconcile_lost_link_race", orphan_code_id=code.id, linked_code_id=linked.code_id)
        await code_ledger.deactivate(db, code.code)
        return await self._linked_code(db, linked.code_id), True

    def _dispatch(self, txn: Transaction, code: Code, outcome: GatewayOutcome) -> None:
        if self.notify is None:
            return
        ctx = txn.payment_data or {}
        email = ctx.get("email")
        if not email:
            return
        try:
            if code.kind == "trial":
                notice = TrialCodeNotice(
                    email=email, name_company=ctx.get("nameCompany"), code=code.code, expires_at=code.expires_at
                )
            else:
                notice = PremiumCodeNotice(
                    email=email,
                    name_company=ctx.get("nameCompany"),
                    code=code.code,
                    order_id=txn.order_id,
                    amount=outcome.amount if outcome.amount is not None else str(txn.amount),
                )
            self.notify(notice)
        except Exception:
            logger.exception("reconcile_notify_failed", order_id=txn.order_id)
