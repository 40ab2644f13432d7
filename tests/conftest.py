import threading

import httpx
import pytest

from paygate.database import Base, make_engine, make_session_factory
from paygate.ledger import PaymentLedger
from paygate.models import Provider
from paygate.mpesa_service import MobileMoneyAdapter
from paygate.orchestrator import PaymentOrchestrator
from paygate.paypal_service import WalletAdapter
from paygate.risk import RiskGate
from paygate.stripe_service import CardAdapter

MPESA_BASE_URL = "https://sandbox.safaricom.co.ke"
PAYPAL_BASE_URL = "https://api-m.sandbox.paypal.com"
MPESA_CALLBACK_URL = "https://pay.example.com/payments/mobile-money/callback"

STK_ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}

WALLET_ORDER_CREATED = {
    "id": "5O190127TN364715T",
    "status": "CREATED",
    "links": [
        {"href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T", "rel": "self"},
        {"href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T", "rel": "approve"},
    ],
}


class RecordingNotifier:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def payment_status_changed(self, payment):
        with self._lock:
            self.calls.append((payment.id, payment.status))


class ProviderStub:
    """httpx MockTransport handler: canned (status, json) per (method, path), requests recorded."""

    def __init__(self, routes):
        self.routes = dict(routes)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, json=body)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger(session_factory, notifier):
    return PaymentLedger(session_factory, notifier=notifier)


@pytest.fixture
def risk_gate():
    return RiskGate(api_key=None, endpoint="https://risk.example.com", enabled=False)


@pytest.fixture
def card():
    return CardAdapter("sk_test_123", "whsec_test")


@pytest.fixture
def mpesa_stub():
    return ProviderStub(
        {
            ("GET", "/oauth/v1/generate"): (200, {"access_token": "mpesa-token", "expires_in": "3599"}),
            ("POST", "/mpesa/stkpush/v1/processrequest"): (200, STK_ACCEPTED),
        }
    )


@pytest.fixture
def mpesa(mpesa_stub):
    return MobileMoneyAdapter(
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="passkey",
        callback_url=MPESA_CALLBACK_URL,
        base_url=MPESA_BASE_URL,
        security_credential="security-credential",
        client=httpx.Client(base_url=MPESA_BASE_URL, transport=httpx.MockTransport(mpesa_stub)),
    )


@pytest.fixture
def paypal_stub():
    return ProviderStub(
        {
            ("POST", "/v1/oauth2/token"): (200, {"access_token": "paypal-token", "expires_in": 32400}),
            ("POST", "/v2/checkout/orders"): (201, WALLET_ORDER_CREATED),
        }
    )


@pytest.fixture
def wallet(paypal_stub):
    return WalletAdapter(
        client_id="client-id",
        client_secret="client-secret",
        base_url=PAYPAL_BASE_URL,
        return_url="https://shop.example.com/payment/success",
        cancel_url="https://shop.example.com/payment/cancel",
        client=httpx.Client(base_url=PAYPAL_BASE_URL, transport=httpx.MockTransport(paypal_stub)),
    )


@pytest.fixture
def orchestrator(ledger, risk_gate, card, mpesa, wallet):
    return PaymentOrchestrator(
        ledger=ledger,
        risk_gate=risk_gate,
        adapters={Provider.CARD: card, Provider.MOBILE_MONEY: mpesa, Provider.WALLET: wallet},
        callback_targets={Provider.MOBILE_MONEY: MPESA_CALLBACK_URL},
        stale_after_seconds=30,
    )


def make_intent(mocker, intent_id="pi_123", status="requires_payment_method", client_secret="pi_123_secret_456", **attrs):
    intent = mocker.Mock()
    intent.id = intent_id
    intent.status = status
    intent.client_secret = client_secret
    intent.payment_method = attrs.pop("payment_method", None)
    intent.latest_charge = attrs.pop("latest_charge", None)
    intent.last_payment_error = attrs.pop("last_payment_error", None)
    for name, value in attrs.items():
        setattr(intent, name, value)
    return intent
