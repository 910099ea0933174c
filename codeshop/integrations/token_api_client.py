import httpx

from codeshop.core.config import settings
from codeshop.core.errors import UpstreamError, UpstreamFormatError, UpstreamTimeoutError

TOKEN_FIELDS = {"trial": "tokenTrial", "premium": "tokenPremium"}


class TokenApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (settings.TOKEN_API_BASE_URL if base_url is None else base_url).strip().rstrip("/")
        self.timeout = settings.TOKEN_API_TIMEOUT_SECONDS if timeout is None else timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _endpoint(self, kind: str) -> str:
        if kind == "trial":
            return settings.TOKEN_API_TRIAL_ENDPOINT
        return settings.TOKEN_API_PREMIUM_ENDPOINT

    async def generate_token(
        self,
        kind: str,
        name_company: str | None,
        email: str | None,
        cccd: str | None,
    ) -> dict:
        """
        POST {nameCompany, email, cccd, type} and return
        {"token": ..., "expiresAt": ...} from the upstream `result` object.
        """
        payload = {
            "nameCompany": name_company,
            "email": email,
            "cccd": cccd,
            "type": kind,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(f"{self.base_url}{self._endpoint(kind)}", json=payload)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Token API timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Token API unreachable: {e}") from e

        if r.status_code != 200:
            raise UpstreamError(f"Token API error {r.status_code}: {r.text}")

        try:
            body = r.json()
        except ValueError as e:
            raise UpstreamFormatError("Token API returned non-JSON body") from e

        result = body.get("result") if isinstance(body, dict) else None
        token = result.get(TOKEN_FIELDS.get(kind, "token")) if isinstance(result, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise UpstreamFormatError("Invalid response format from token API")

        return {"token": token.strip(), "expiresAt": result.get("expiresAt")}
