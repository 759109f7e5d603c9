from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

from agenda.config import settings
from agenda.exceptions import NotificationError
from agenda.metrics import NOTIFICATIONS_SENT
from agenda.services.templates import RenderedMessage
from agenda.utils.log_mask import mask_recipient

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class Recipient:
    name: str
    email: str | None = None
    phone: str | None = None

    @property
    def address(self) -> str | None:
        return self.email or self.phone


@dataclass(frozen=True)
class SendResult:
    recipient: str
    success: bool
    error: str | None = None


class NotificationGateway(Protocol):
    async def send(self, recipient: Recipient, message: RenderedMessage) -> SendResult: ...


_http_client: httpx.AsyncClient | None = None


def _get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


class ResendEmailGateway:
    """Deliver rendered messages by e-mail through the Resend API.

    Without an API key the gateway runs in dev mode: the message is logged
    and reported as sent.
    """

    def __init__(
        self,
        api_key: str | None = None,
        sender: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._api_key = settings.RESEND_API_KEY if api_key is None else api_key
        self._sender = sender or settings.EMAIL_FROM
        self._client = client

    async def send(self, recipient: Recipient, message: RenderedMessage) -> SendResult:
        masked = mask_recipient(recipient.address)
        if not recipient.email:
            raise NotificationError(masked, "recipient has no email address")

        if not self._api_key:
            logger.info("email_send_dev_mode", to=masked, subject=message.subject)
            return SendResult(recipient=masked, success=True)

        client = self._client or _get_http_client()
        try:
            response = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "from": self._sender,
                    "to": [recipient.email],
                    "subject": message.subject,
                    "html": message.body,
                },
            )
        except httpx.HTTPError as exc:
            raise NotificationError(masked, f"transport error: {exc}") from exc

        if not response.is_success:
            raise NotificationError(masked, f"Resend returned HTTP {response.status_code}")
        logger.info("email_sent", to=masked, subject=message.subject)
        return SendResult(recipient=masked, success=True)


async def send_each(
    gateway: NotificationGateway,
    deliveries: Iterable[tuple[Recipient, RenderedMessage]],
    *,
    template: str,
) -> list[SendResult]:
    """Send one message per recipient; a failure never affects the others."""
    results: list[SendResult] = []
    for recipient, message in deliveries:
        masked = mask_recipient(recipient.address)
        try:
            result = await gateway.send(recipient, message)
        except NotificationError as exc:
            result = SendResult(recipient=exc.recipient, success=False, error=exc.detail)
        except Exception as exc:
            logger.exception("notification_send_error", to=masked, template=template)
            result = SendResult(recipient=masked, success=False, error=str(exc))

        NOTIFICATIONS_SENT.labels(
            template=template, status="sent" if result.success else "failed"
        ).inc()
        if not result.success:
            logger.warning(
                "notification_failed", to=result.recipient, template=template, error=result.error
            )
        results.append(result)
    return results
