from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from paygate.auth import require_admin, verify_token
from paygate.errors import NotFoundError
from paygate.models import Payment
from paygate.orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/payments")


class PaymentRequest(BaseModel):
    order_id: str
    amount: int
    currency: str = "usd"
    provider: str = "card"
    phone_number: str | None = None
    description: str | None = None
    return_url: str | None = None
    cancel_url: str | None = None
    metadata: dict | None = None


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, description="Minor units; defaults to the remaining balance")


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def risk_context(request: Request, user_id: str) -> dict:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return {
        "ip": ip,
        "user_agent": request.headers.get("user-agent"),
        "accept_language": request.headers.get("accept-language"),
        "referer": request.headers.get("referer") or request.headers.get("referrer"),
        "device_id": request.headers.get("x-device-id"),
        "session_id": request.headers.get("x-session-id"),
        "path": request.url.path,
        "method": request.method,
        "user_id": user_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _visible(payment: Payment, claims: dict) -> Payment:
    if claims.get("role") != "admin" and payment.user_id != str(claims["sub"]):
        raise NotFoundError(f"Payment {payment.id} not found")
    return payment


@router.post("", status_code=201)
def create_payment_api(
    body: PaymentRequest,
    request: Request,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    user_id = str(claims["sub"])
    provider_params = {
        key: value
        for key, value in {
            "phone_number": body.phone_number,
            "description": body.description,
            "return_url": body.return_url,
            "cancel_url": body.cancel_url,
        }.items()
        if value is not None
    }
    result = orchestrator.initiate(
        order_id=body.order_id,
        user_id=user_id,
        amount=body.amount,
        currency=body.currency,
        provider=body.provider,
        provider_params=provider_params,
        request_context=risk_context(request, user_id),
        metadata=body.metadata,
    )
    return {
        "payment_id": result.payment_id,
        "status": result.status,
        "provider_handle": result.provider_handle,
        "client_instructions": result.client_instructions,
        "risk": result.risk_summary,
    }


@router.get("/user")
def user_payments_api(
    limit: int = 50,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    payments = orchestrator.list_user_payments(str(claims["sub"]), limit=limit)
    return {"count": len(payments), "data": [p.to_dict() for p in payments]}


@router.get("/stats")
def payment_stats_api(
    start: datetime | None = None,
    end: datetime | None = None,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return {"data": orchestrator.payment_stats(str(claims["sub"]), start, end)}


@router.get("/order/{order_id}")
def payment_by_order_api(
    order_id: str,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    payment = orchestrator.get_status_by_order(order_id)
    return _visible(payment, claims).to_dict()


@router.get("/{payment_id}/status")
def payment_status_api(
    payment_id: str,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    _visible(orchestrator.ledger.get(payment_id), claims)
    return orchestrator.get_status(payment_id).to_dict()


@router.post("/{payment_id}/confirm")
def confirm_payment_api(
    payment_id: str,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    _visible(orchestrator.ledger.get(payment_id), claims)
    return orchestrator.confirm(payment_id).to_dict()


@router.post("/{payment_id}/cancel")
def cancel_payment_api(
    payment_id: str,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    _visible(orchestrator.ledger.get(payment_id), claims)
    return orchestrator.cancel(payment_id).to_dict()


@router.post("/{payment_id}/reconcile")
def reconcile_payment_api(
    payment_id: str,
    claims: dict = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    _visible(orchestrator.ledger.get(payment_id), claims)
    return orchestrator.reconcile(payment_id).to_dict()


@router.post("/{payment_id}/refund")
def refund_payment_api(
    payment_id: str,
    body: RefundRequest | None = None,
    admin=Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    amount = body.amount if body else None
    return orchestrator.refund(payment_id, amount).to_dict()
