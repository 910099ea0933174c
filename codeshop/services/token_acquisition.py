from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.config import settings
from codeshop.core.errors import ConflictError, UpstreamError
from codeshop.integrations.token_api_client import TokenApiClient
from codeshop.models.code import Code
from codeshop.services import code_ledger
from codeshop.services.code_ledger import trial_expiry

logger = structlog.get_logger()

LOCAL_PREFIXES = {"trial": "TRL", "premium": "PRM", "enterprise": "ENT"}

SOURCE_LOCAL = "local"
SOURCE_UPSTREAM = "upstream"
SOURCE_FALLBACK = "upstream-fallback"


@dataclass
class AcquiredToken:
    token: str
    source: str
    expires_at: datetime | None
    error: str | None = None


def local_token(kind: str) -> str:
    # TRL-A1B2-C3D4-E5F6 / PRM-A1B2-C3D4-E5F6
    prefix = LOCAL_PREFIXES.get(kind, "COD")
    return f"{prefix}-" + "-".join(secrets.token_hex(2).upper() for _ in range(3))


def _default_expiry(kind: str) -> datetime | None:
    return trial_expiry() if kind == "trial" else None


def _parse_expiry(kind: str, raw) -> datetime | None:
    if kind != "trial":
        return None
    if not raw:
        return _default_expiry(kind)
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("token_expiry_unparseable", value=str(raw))
        return _default_expiry(kind)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class TokenAcquisitionGateway:
    """
    Obtain the string that becomes a Code.

    Upstream first when configured; on any upstream failure a local token is
    synthesized instead. acquire() never raises.
    """

    def __init__(self, client: TokenApiClient | None = None):
        self.client = client or TokenApiClient()

    def _local(self, kind: str, source: str, error: str | None = None) -> AcquiredToken:
        return AcquiredToken(token=local_token(kind), source=source, expires_at=_default_expiry(kind), error=error)

    async def acquire(
        self,
        kind: str,
        company_name: str | None,
        email: str | None,
        national_id: str | None,
    ) -> AcquiredToken:
        if not self.client.configured:
            logger.info("token_acquired", kind=kind, source=SOURCE_LOCAL)
            return self._local(kind, SOURCE_LOCAL)

        try:
            result = await self.client.generate_token(kind, company_name, email, national_id)
        except UpstreamError as e:
            logger.warning("token_upstream_failed", kind=kind, error=str(e), error_type=type(e).__name__)
            return self._local(kind, SOURCE_FALLBACK, error=str(e))
        except Exception as e:
            logger.exception("token_upstream_unexpected_error", kind=kind)
            return self._local(kind, SOURCE_FALLBACK, error=str(e))

        logger.info("token_acquired", kind=kind, source=SOURCE_UPSTREAM)
        return AcquiredToken(
            token=result["token"],
            source=SOURCE_UPSTREAM,
            expires_at=_parse_expiry(kind, result.get("expiresAt")),
        )


async def issue_acquired(
    db: AsyncSession,
    *,
    kind: str,
    owner_user_id: int | None,
    acquired: AcquiredToken,
) -> Code:
    """
    Persist an acquired token as a Code.

    An upstream token is stored verbatim, so a collision is a hard conflict.
    A locally synthesized token that collides is redrawn, up to
    CODE_GENERATION_ATTEMPTS times.
    """
    attempts = max(1, int(settings.CODE_GENERATION_ATTEMPTS))
    for attempt in range(attempts):
        try:
            return await code_ledger.issue(
                db,
                kind=kind,
                owner_user_id=owner_user_id,
                external_token=acquired.token,
                expires_at=acquired.expires_at,
            )
        except ConflictError:
            if acquired.source == SOURCE_UPSTREAM:
                raise
            logger.warning("local_token_collision", kind=kind, attempt=attempt + 1)
            acquired = AcquiredToken(
                token=local_token(kind),
                source=acquired.source,
                expires_at=acquired.expires_at,
                error=acquired.error,
            )
    raise ConflictError("Failed to issue a unique code")
