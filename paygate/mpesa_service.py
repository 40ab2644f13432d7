"""
Mobile money through M-Pesa Daraja (STK push).

Flow: OAuth token -> STK push -> the payer approves on their phone -> the
result arrives on the callback URL. ``query`` is the fallback for lost or
late callbacks; both channels read their result code through the single
``OUTCOMES`` table.

Daraja has no reversal API for STK payments. ``refund`` sends a B2C
"BusinessPayment" disbursement of the refunded amount back to the payer's
phone. It moves money the other way but is a new transaction, not a
reversal of the original one.
"""
import base64
import re
import threading
import time
from datetime import datetime, timedelta, timezone

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
from paygate.errors import ProviderError, ValidationError
from paygate.models import Provider

logger = structlog.get_logger(__name__)

EAT = timezone(timedelta(hours=3))

# Tokens live 3599s, refresh a little early
TOKEN_TTL_SECONDS = 3500

PHONE_FORMAT_ERROR = "Invalid phone number format. Use 254XXXXXXXXX, 0XXXXXXXXX, or XXXXXXXXX"

STILL_PROCESSING = "500.001.1001"

RESULT_DESCRIPTIONS = {
    "0": "The service request is processed successfully.",
    "1": "The balance is insufficient for the transaction.",
    "1001": "Unable to lock subscriber, a transaction is already in process.",
    "1019": "Transaction has expired.",
    "1025": "An error occurred while sending a push request.",
    "1032": "Request cancelled by user.",
    "1037": "DS timeout user cannot be reached.",
    "2001": "The initiator information is invalid.",
    "9999": "An error occurred while sending a push request.",
    STILL_PROCESSING: "The transaction is being processed.",
}


def normalize_phone_number(phone_number) -> str:
    """
    0712345678, 712345678, 254712345678 and "0712 345 678" -> 254712345678.
    """
    if not isinstance(phone_number, str) or not phone_number.strip():
        raise ValidationError("Phone number is required for mobile money payments")
    cleaned = re.sub(r"[\s-]", "", phone_number)
    if not cleaned.isdigit():
        raise ValidationError(PHONE_FORMAT_ERROR)
    if cleaned.startswith("254") and len(cleaned) == 12:
        return cleaned
    if cleaned.startswith("0") and len(cleaned) == 10:
        return "254" + cleaned[1:]
    if len(cleaned) == 9 and not cleaned.startswith("0"):
        return "254" + cleaned
    raise ValidationError(PHONE_FORMAT_ERROR)


class MobileMoneyAdapter(ProviderAdapter):
    name = Provider.MOBILE_MONEY.value

    # Daraja ResultCode (callback and query) -> outcome
    OUTCOMES = {
        "0": Outcome.SUCCEEDED,
        STILL_PROCESSING: Outcome.PROCESSING,
        "1": Outcome.FAILED,
        "1001": Outcome.FAILED,
        "1019": Outcome.FAILED,
        "1025": Outcome.FAILED,
        # a payer cancelling on the handset is a failed attempt: processing -> canceled is not a transition
        "1032": Outcome.FAILED,
        "1037": Outcome.FAILED,
        "2001": Outcome.FAILED,
        "9999": Outcome.FAILED,
    }

    @classmethod
    def outcome_for(cls, code) -> Outcome:
        return super().outcome_for(str(code).strip())

    def __init__(
        self,
        consumer_key: str | None,
        consumer_secret: str | None,
        shortcode: str | None,
        passkey: str | None,
        callback_url: str | None,
        base_url: str,
        initiator_name: str = "testapi",
        security_credential: str | None = None,
        timeout: float = 15.0,
        client: httpx.Client | None = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.initiator_name = initiator_name
        self.security_credential = security_credential
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._access_token: str | None = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def get_access_token(self) -> str:
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expiry:
                return self._access_token
            credentials = base64.b64encode(f"{self.consumer_key}:{self.consumer_secret}".encode()).decode()
            try:
                response = self._client.get(
                    "/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    headers={"Authorization": f"Basic {credentials}"},
                )
                response.raise_for_status()
                self._access_token = response.json()["access_token"]
            except (httpx.HTTPError, KeyError, ValueError) as exc:
                logger.error("mpesa_auth_failed", error=str(exc))
                raise ProviderError("Failed to authenticate with M-Pesa API")
            self._token_expiry = time.monotonic() + TOKEN_TTL_SECONDS
            return self._access_token

    def generate_password(self, timestamp: str) -> str:
        return base64.b64encode(f"{self.shortcode}{self.passkey}{timestamp}".encode()).decode()

    def _post(self, operation: str, path: str, body: dict) -> httpx.Response:
        token = self.get_access_token()
        try:
            return self._client.post(path, json=body, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException:
            logger.error("mpesa_timeout", operation=operation)
            raise ProviderError(f"M-Pesa timed out during {operation}", timed_out=True)
        except httpx.HTTPError as exc:
            logger.error("mpesa_request_failed", operation=operation, error=str(exc))
            raise ProviderError(f"M-Pesa request failed during {operation}")

    # ------------------------------------------------------------------
    # ProviderAdapter
    # ------------------------------------------------------------------

    def validate_params(self, amount, currency, params):
        if currency.lower() != "kes":
            raise ValidationError("Mobile money payments must be in KES")
        if amount % 100:
            raise ValidationError("Mobile money amounts must be whole shillings")
        params = dict(params or {})
        params["phone_number"] = normalize_phone_number(params.get("phone_number"))
        return params

    def initiate(self, amount, currency, reference, callback_target, params):
        timestamp = datetime.now(EAT).strftime("%Y%m%d%H%M%S")
        phone = params["phone_number"]
        order_id = params.get("order_id") or reference
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount // 100,
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_target or self.callback_url,
            "AccountReference": order_id,
            "TransactionDesc": f"Payment for order {order_id}",
        }
        response = self._post("initiate", "/mpesa/stkpush/v1/processrequest", body)
        data = _json(response)
        if response.is_error or str(data.get("ResponseCode")) != "0":
            message = data.get("errorMessage") or data.get("ResponseDescription") or "M-Pesa payment initiation failed"
            raise ProviderError(message)
        return InitiationResult(
            provider_transaction_id=data["CheckoutRequestID"],
            mode=Mode.ASYNC,
            client_instructions={
                "message": data.get("CustomerMessage") or "Check your phone to complete the payment",
                "checkout_request_id": data["CheckoutRequestID"],
                "merchant_request_id": data.get("MerchantRequestID"),
            },
            phone_number=phone,
        )

    def query(self, provider_transaction_id):
        timestamp = datetime.now(EAT).strftime("%Y%m%d%H%M%S")
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": provider_transaction_id,
        }
        response = self._post("query", "/mpesa/stkpushquery/v1/query", body)
        data = _json(response)
        code = data.get("ResultCode")
        if code is None:
            code = data.get("errorCode")
        if code is None:
            raise ProviderError("Failed to query M-Pesa transaction status")
        return self.result_for(code, data.get("ResultDesc") or data.get("errorMessage"), raw=data)

    def confirm(self, provider_transaction_id):
        # No client-side confirmation step: the payer confirms on the handset
        result = self.query(provider_transaction_id)
        return ConfirmationResult(status=result.status, error_message=result.error_message, raw=result.raw)

    def refund(self, payment, amount):
        if not self.security_credential:
            raise ProviderError("MPESA_SECURITY_CREDENTIAL is required for B2C refunds")
        if not payment.phone_number:
            raise ProviderError("No payer phone number recorded for this payment")
        if amount % 100:
            raise ProviderError("Mobile money refunds must be whole shillings")
        callback = self.callback_url or ""
        body = {
            "InitiatorName": self.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "BusinessPayment",
            "Amount": amount // 100,
            "PartyA": self.shortcode,
            "PartyB": payment.phone_number,
            "Remarks": f"Refund for transaction {payment.method_descriptor or payment.provider_transaction_id}",
            "QueueTimeOutURL": f"{callback}/timeout",
            "ResultURL": f"{callback}/result",
            "Occasion": "Refund",
        }
        response = self._post("refund", "/mpesa/b2c/v1/paymentrequest", body)
        data = _json(response)
        if response.is_error or str(data.get("ResponseCode")) != "0":
            raise ProviderError(data.get("errorMessage") or data.get("ResponseDescription") or "Refund initiation failed")
        return RefundResult(refund_id=data["ConversationID"], refunded_amount=amount)

    # ------------------------------------------------------------------
    # Callback parsing
    # ------------------------------------------------------------------

    def result_for(self, code, description: str | None = None, receipt: str | None = None, raw: dict | None = None) -> QueryResult:
        code = str(code).strip()
        status = self.outcome_for(code)
        error_message = None
        if status == Outcome.FAILED:
            error_message = description or RESULT_DESCRIPTIONS.get(code) or "Payment failed"
        return QueryResult(
            status=status,
            method_descriptor=receipt if status == Outcome.SUCCEEDED else None,
            error_message=error_message,
            raw=raw or {},
        )

    def parse_callback(self, payload: dict) -> tuple[str, QueryResult]:
        """``Body.stkCallback`` -> (CheckoutRequestID, result)."""
        try:
            callback = payload["Body"]["stkCallback"]
            checkout_request_id = callback["CheckoutRequestID"]
            code = callback["ResultCode"]
        except (KeyError, TypeError):
            raise ValueError("Malformed M-Pesa callback")

        items = {}
        for item in (callback.get("CallbackMetadata") or {}).get("Item") or []:
            if isinstance(item, dict) and "Name" in item:
                items[item["Name"]] = item.get("Value")

        receipt = items.get("MpesaReceiptNumber")
        result = self.result_for(
            code,
            callback.get("ResultDesc"),
            receipt=str(receipt) if receipt is not None else None,
            raw={"ResultCode": code, "ResultDesc": callback.get("ResultDesc")},
        )
        return checkout_request_id, result


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
