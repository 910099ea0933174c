from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from codeshop.core.config import settings
from codeshop.core.errors import DispatchError
from codeshop.integrations.email_client import EmailClient
from codeshop.services.email_templates import premium_code_email, trial_code_email

logger = structlog.get_logger()


def days_until(expires_at: datetime | None, now: datetime | None = None) -> int:
    """Whole days a code has left, rounded up; the configured trial length when unknown."""
    if expires_at is None:
        return settings.TRIAL_EXPIRY_DAYS
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = expires_at - (now or datetime.now(timezone.utc))
    return max(1, math.ceil(remaining.total_seconds() / 86400))


@dataclass
class PremiumCodeNotice:
    email: str
    name_company: str | None
    code: str
    order_id: str
    amount: str | None


@dataclass
class TrialCodeNotice:
    email: str
    name_company: str | None
    code: str
    expires_at: datetime | None


class NotificationDispatcher:
    """
    Best-effort email side channel. Runs after the response is sent, retries
    with exponential backoff and never raises.
    """

    def __init__(
        self,
        client: EmailClient | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        self.client = client or EmailClient()
        self.max_attempts = max(1, settings.EMAIL_MAX_ATTEMPTS if max_attempts is None else max_attempts)
        self.backoff_seconds = settings.EMAIL_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    async def _deliver(self, *, to: str, to_name: str | None, subject: str, html_body: str, kind: str) -> bool:
        if not self.client.configured:
            logger.info("email_skipped_not_configured", to=to, kind=kind)
            return False

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.client.send(to=to, to_name=to_name, subject=subject, html_body=html_body)
            except DispatchError as e:
                logger.warning("email_send_failed", to=to, kind=kind, attempt=attempt, error=str(e))
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                continue
            except Exception:
                logger.exception("email_send_crashed", to=to, kind=kind, attempt=attempt)
                return False
            logger.info("email_sent", to=to, kind=kind, attempt=attempt)
            return True

        logger.error("email_gave_up", to=to, kind=kind, attempts=self.max_attempts)
        return False

    async def send_premium_code(self, notice: PremiumCodeNotice) -> bool:
        subject, html = premium_code_email(
            notice.name_company,
            notice.code,
            notice.order_id,
            notice.amount,
            datetime.now(timezone.utc).strftime("%d/%m/%Y %H:%M:%S UTC"),
        )
        return await self._deliver(
            to=notice.email, to_name=notice.name_company, subject=subject, html_body=html, kind="premium"
        )

    async def send_trial_code(self, notice: TrialCodeNotice) -> bool:
        expiry = notice.expires_at.strftime("%d/%m/%Y") if notice.expires_at else ""
        subject, html = trial_code_email(notice.name_company, notice.code, expiry, days_until(notice.expires_at))
        return await self._deliver(
            to=notice.email, to_name=notice.name_company, subject=subject, html_body=html, kind="trial"
        )
