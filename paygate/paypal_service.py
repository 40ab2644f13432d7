"""
Wallet payments through PayPal Orders v2.

Three phases: create the order and hand the payer the approval link, the
payer approves on PayPal, then ``confirm`` captures it. There is no push
notification for the approval itself, so ``query`` is how an order abandoned
mid-redirect gets reconciled. Refunds act on the capture id returned by
the capture call, never on the order id.
"""
import threading
import time

import httpx
import structlog

from paygate.adapters import (
    ConfirmationResult,
    InitiationResult,
    Mode,
    Outcome,
    ProviderAdapter,
    QueryResult,
    RefundResult,
)
from paygate.currencies import to_major_units
from paygate.errors import ProviderError
from paygate.models import Provider

logger = structlog.get_logger(__name__)


class WalletAdapter(ProviderAdapter):
    name = Provider.WALLET.value

    # order.status -> outcome
    OUTCOMES = {
        "CREATED": Outcome.PENDING,
        "SAVED": Outcome.PENDING,
        "PAYER_ACTION_REQUIRED": Outcome.PENDING,
        "APPROVED": Outcome.PROCESSING,
        "COMPLETED": Outcome.SUCCEEDED,
        "VOIDED": Outcome.CANCELED,
        "CANCELLED": Outcome.CANCELED,
    }
    DEFAULT_OUTCOME = Outcome.PENDING
    IDEMPOTENT_INITIATE = True

    # capture.status -> outcome
    CAPTURE_OUTCOMES = {
        "COMPLETED": Outcome.SUCCEEDED,
        "PENDING": Outcome.PROCESSING,
        "DECLINED": Outcome.FAILED,
        "FAILED": Outcome.FAILED,
    }

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        base_url: str,
        return_url: str,
        cancel_url: str,
        brand_name: str = "ShopSphere",
        timeout: float = 15.0,
        client: httpx.Client | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._access_token: str | None = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()

    def get_access_token(self) -> str:
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expiry:
                return self._access_token
            try:
                response = self._client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id or "", self.client_secret or ""),
                )
                response.raise_for_status()
                data = response.json()
                self._access_token = data["access_token"]
                expires_in = int(data.get("expires_in", 3600))
            except (httpx.HTTPError, KeyError, ValueError) as exc:
                logger.error("paypal_auth_failed", error=str(exc))
                raise ProviderError("Failed to authenticate with PayPal API")
            self._token_expiry = time.monotonic() + max(expires_in - 60, 60)
            return self._access_token

    def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.get_access_token()}", **kwargs.pop("headers", {})}
        try:
            return self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException:
            logger.error("paypal_timeout", operation=operation)
            raise ProviderError(f"PayPal timed out during {operation}", timed_out=True)
        except httpx.HTTPError as exc:
            logger.error("paypal_request_failed", operation=operation, error=str(exc))
            raise ProviderError(f"PayPal request failed during {operation}")

    def initiate(self, amount, currency, reference, callback_target, params):
        order_id = params.get("order_id") or reference
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference,
                    "custom_id": order_id,
                    "description": params.get("description") or f"Order {order_id}",
                    "amount": {"currency_code": currency.upper(), "value": to_major_units(amount, currency)},
                }
            ],
            "application_context": {
                "return_url": params.get("return_url") or self.return_url,
                "cancel_url": params.get("cancel_url") or self.cancel_url,
                "brand_name": self.brand_name,
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
            },
        }
        response = self._request(
            "initiate",
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": reference},
        )
        data = _json(response)
        if response.is_error or "id" not in data:
            raise ProviderError(_error_message(data, "Failed to create PayPal order"))

        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return InitiationResult(
            provider_transaction_id=data["id"],
            mode=Mode.SYNC,
            client_instructions={"approval_url": approval_url, "wallet_order_id": data["id"]},
            raw={"status": data.get("status")},
        )

    def confirm(self, provider_transaction_id):
        response = self._request(
            "confirm",
            "POST",
            f"/v2/checkout/orders/{provider_transaction_id}/capture",
            json={},
        )
        data = _json(response)
        if response.status_code == 422:
            # e.g. ORDER_NOT_APPROVED: the provider answered, the order is simply not capturable
            return ConfirmationResult(
                status=Outcome.FAILED,
                error_message=_error_message(data, "PayPal order could not be captured"),
                raw={"status": data.get("name")},
            )
        if response.is_error:
            raise ProviderError(_error_message(data, "Failed to capture PayPal payment"))

        capture = _first_capture(data)
        if data.get("status") != "COMPLETED" or capture is None:
            return ConfirmationResult(
                status=Outcome.FAILED,
                error_message=f"PayPal order status {data.get('status')}",
                raw={"status": data.get("status")},
            )
        status = self.CAPTURE_OUTCOMES.get(capture.get("status"), Outcome.FAILED)
        return ConfirmationResult(
            status=status,
            method_descriptor=(data.get("payer") or {}).get("email_address"),
            capture_id=capture.get("id"),
            error_message=None if status != Outcome.FAILED else f"PayPal capture {capture.get('status')}",
            raw={"status": data.get("status"), "capture_status": capture.get("status")},
        )

    def query(self, provider_transaction_id):
        response = self._request("query", "GET", f"/v2/checkout/orders/{provider_transaction_id}")
        data = _json(response)
        if response.is_error or "status" not in data:
            raise ProviderError(_error_message(data, "Failed to get PayPal order details"))
        status = self.outcome_for(data["status"])
        return QueryResult(
            status=status,
            method_descriptor=(data.get("payer") or {}).get("email_address") if status == Outcome.SUCCEEDED else None,
            capture_id=(_first_capture(data) or {}).get("id"),
            raw={"status": data["status"]},
        )

    def refund(self, payment, amount):
        if not payment.provider_capture_id:
            raise ProviderError("No capture ID found for this payment")
        response = self._request(
            "refund",
            "POST",
            f"/v2/payments/captures/{payment.provider_capture_id}/refund",
            json={"amount": {"currency_code": payment.currency.upper(), "value": to_major_units(amount, payment.currency)}},
            headers={"PayPal-Request-Id": f"{payment.id}-refund-{amount}"},
        )
        data = _json(response)
        if response.is_error or "id" not in data:
            raise ProviderError(_error_message(data, "Failed to process PayPal refund"))
        return RefundResult(refund_id=data["id"], refunded_amount=amount)


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(data: dict, default: str) -> str:
    details = data.get("details") or []
    if details and isinstance(details[0], dict):
        issue = details[0].get("issue")
        description = details[0].get("description")
        if issue or description:
            return ": ".join(part for part in (issue, description) if part)
    return data.get("message") or default


def _first_capture(data: dict) -> dict | None:
    for unit in data.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None
