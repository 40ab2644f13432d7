"""Fire-and-forget notification of terminal payment status changes."""
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    def payment_status_changed(self, payment) -> None: ...


class LoggingNotifier:
    def payment_status_changed(self, payment) -> None:
        logger.info(
            "payment_notification",
            payment_id=payment.id,
            order_id=payment.order_id,
            user_id=payment.user_id,
            status=payment.status,
        )


class HttpNotifier:
    """
    Posts status changes to the notification service on a background thread.

    The caller never waits for delivery and nothing is retried; failures are logged.
    """

    def __init__(self, url: str, timeout: float = 5.0, max_workers: int = 2, client: httpx.Client | None = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def payment_status_changed(self, payment) -> None:
        body = {
            "type": "payment_status",
            "user_id": payment.user_id,
            "order_id": payment.order_id,
            "payment_id": payment.id,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
        }
        self._executor.submit(self._send, body)

    def _send(self, body: dict) -> None:
        try:
            response = self._client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("payment_notification_failed", payment_id=body["payment_id"], error=str(exc))

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._client.close()
