from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from paygate.config import Settings, get_settings
from paygate.database import Base, SessionLocal, engine
from paygate.errors import PaymentError, SignatureVerificationError
from paygate.ledger import PaymentLedger
from paygate.logging_config import setup_logging
from paygate.models import Provider
from paygate.mpesa_service import MobileMoneyAdapter
from paygate.notifications import HttpNotifier, LoggingNotifier
from paygate.orchestrator import PaymentOrchestrator
from paygate.paypal_service import WalletAdapter
from paygate.risk import RiskGate
from paygate.routes import get_orchestrator, router
from paygate.stripe_service import CardAdapter

logger = structlog.get_logger(__name__)


def build_orchestrator(settings: Settings, session_factory) -> PaymentOrchestrator:
    """One adapter per configured provider, built once and shared."""
    adapters = {}
    if settings.stripe_secret_key:
        adapters[Provider.CARD] = CardAdapter(settings.stripe_secret_key, settings.stripe_webhook_secret)
    if settings.mpesa_consumer_key and settings.mpesa_consumer_secret:
        adapters[Provider.MOBILE_MONEY] = MobileMoneyAdapter(
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey,
            callback_url=settings.mpesa_callback_url,
            base_url=settings.mpesa_base_url,
            initiator_name=settings.mpesa_initiator_name,
            security_credential=settings.mpesa_security_credential,
            timeout=settings.provider_timeout_seconds,
        )
    if settings.paypal_client_id and settings.paypal_client_secret:
        adapters[Provider.WALLET] = WalletAdapter(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            base_url=settings.paypal_base_url,
            return_url=settings.paypal_return_url,
            cancel_url=settings.paypal_cancel_url,
            brand_name=settings.paypal_brand_name,
            timeout=settings.provider_timeout_seconds,
        )
    missing = [p.value for p in Provider if p not in adapters]
    if missing:
        logger.warning("providers_not_configured", providers=missing)

    notifier = HttpNotifier(settings.notification_url) if settings.notification_url else LoggingNotifier()
    risk_gate = RiskGate(
        api_key=settings.risk_api_key,
        endpoint=settings.risk_endpoint,
        enabled=settings.risk_enabled,
        block_threshold=settings.risk_block_threshold,
        challenge_threshold=settings.risk_challenge_threshold,
        timeout=settings.risk_timeout_seconds,
    )
    return PaymentOrchestrator(
        ledger=PaymentLedger(session_factory, notifier=notifier),
        risk_gate=risk_gate,
        adapters=adapters,
        callback_targets={Provider.MOBILE_MONEY: settings.mpesa_callback_url},
        stale_after_seconds=settings.status_stale_after_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if getattr(app.state, "orchestrator", None) is None:
        Base.metadata.create_all(bind=engine)
        app.state.orchestrator = build_orchestrator(get_settings(), SessionLocal)
    yield
    close = getattr(app.state.orchestrator.ledger.notifier, "close", None)
    if close is not None:
        close()


app = FastAPI(title="Payment Orchestration Service", lifespan=lifespan)

app.include_router(router)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    content = {"detail": exc.message}
    payment_id = getattr(exc, "payment_id", None)
    if payment_id:
        content["payment_id"] = payment_id
    return JSONResponse(status_code=exc.status_code, content=content)


@app.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    payload = await request.body()

    try:
        return orchestrator.ingress.handle_card_webhook(payload, stripe_signature)
    except SignatureVerificationError as exc:
        logger.warning("card_webhook_rejected", reason=exc.message)
        return JSONResponse(status_code=400, content={"detail": "Webhook signature verification failed"})


@app.post("/payments/mobile-money/callback")
async def mobile_money_callback(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("mobile_money_callback_unparseable")
        payload = None
    return orchestrator.ingress.handle_mobile_money_callback(payload)
