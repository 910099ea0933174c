from __future__ import annotations

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status

from codeshop.core.config import settings
from codeshop.core.security import admin_key_matches
from codeshop.integrations.momo_client import MomoClient
from codeshop.services.notifications import NotificationDispatcher, PremiumCodeNotice, TrialCodeNotice
from codeshop.services.outcome_policy import OutcomePolicy
from codeshop.services.reconciler import CallbackReconciler
from codeshop.services.token_acquisition import TokenAcquisitionGateway


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    if not admin_key_matches(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")


def get_token_gateway() -> TokenAcquisitionGateway:
    return TokenAcquisitionGateway()


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


def get_momo_client() -> MomoClient:
    return MomoClient()


def get_outcome_policy() -> OutcomePolicy:
    return OutcomePolicy(settings.RECONCILE_POLICY)


def get_reconciler(
    background_tasks: BackgroundTasks,
    token_gateway: TokenAcquisitionGateway = Depends(get_token_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    policy: OutcomePolicy = Depends(get_outcome_policy),
) -> CallbackReconciler:
    # Email goes out after the response is sent
    def notify(notice: PremiumCodeNotice | TrialCodeNotice) -> None:
        if isinstance(notice, TrialCodeNotice):
            background_tasks.add_task(dispatcher.send_trial_code, notice)
        else:
            background_tasks.add_task(dispatcher.send_premium_code, notice)

    return CallbackReconciler(token_gateway, policy, notify=notify)
