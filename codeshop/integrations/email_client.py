import httpx

from codeshop.core.config import settings
from codeshop.core.errors import DispatchError


class EmailClient:
    """Brevo transactional email API."""

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = settings.EMAIL_API_URL if api_url is None else api_url
        self.api_key = settings.EMAIL_API_KEY if api_key is None else api_key
        self.timeout = settings.EMAIL_TIMEOUT_SECONDS if timeout is None else timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def send(self, *, to: str, to_name: str | None, subject: str, html_body: str) -> dict:
        payload = {
            "sender": {"name": settings.EMAIL_SENDER_NAME, "email": settings.EMAIL_SENDER_EMAIL},
            "to": [{"email": to, "name": to_name or "User"}],
            "subject": subject,
            "htmlContent": html_body,
        }
        headers = {
            "accept": "application/json",
            "api-key": self.api_key,
            "content-type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DispatchError(f"Failed to send email: {e}") from e

        if r.status_code >= 400:
            raise DispatchError(f"Failed to send email: {r.status_code} {r.text}")

        try:
            data = r.json()
        except ValueError:
            data = {}
        return {"messageId": data.get("messageId"), "data": data}
