"""
PaymentOrchestrator: the public payment contract.

initiate: validate -> risk gate -> pending record -> provider -> ledger.
Every later status change (confirm, refund, cancel, poll) goes through the
ledger's guarded transition, shared with the inbound callback channel.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog

from paygate.adapters import Mode, ProviderAdapter
from paygate.currencies import normalize_currency
from paygate.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ProviderCancellationError,
    ProviderConfirmationError,
    ProviderError,
    ProviderInitiationError,
    ProviderQueryError,
    RefundError,
    RiskBlockedError,
    ValidationError,
)
from paygate.ingress import CallbackIngress, apply_outcome
from paygate.models import ACTIVE_STATUSES, Payment, PaymentStatus, Provider
from paygate.risk import ALLOW, RiskAssessment, summarize

logger = structlog.get_logger(__name__)

MAX_METADATA_KEYS = 20
MAX_METADATA_KEY_LENGTH = 40
MAX_METADATA_VALUE_LENGTH = 500


@dataclass
class InitiateResult:
    payment_id: str
    status: str
    provider_handle: str | None
    client_instructions: dict = field(default_factory=dict)
    risk_summary: dict = field(default_factory=dict)


def validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Invalid amount: must be a positive integer in minor currency units")
    return amount


def validate_metadata(metadata) -> dict:
    """Flat string -> string|number map."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be a flat key/value map")
    if len(metadata) > MAX_METADATA_KEYS:
        raise ValidationError(f"Metadata cannot have more than {MAX_METADATA_KEYS} keys")
    for key, value in metadata.items():
        if not isinstance(key, str) or not key or len(key) > MAX_METADATA_KEY_LENGTH:
            raise ValidationError(f"Invalid metadata key: {key!r}")
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValidationError(f"Metadata value for {key!r} must be a string or a number")
        if isinstance(value, str) and len(value) > MAX_METADATA_VALUE_LENGTH:
            raise ValidationError(f"Metadata value for {key!r} is too long")
    return dict(metadata)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PaymentOrchestrator:
    def __init__(
        self,
        ledger,
        risk_gate,
        adapters: dict,
        callback_targets: dict | None = None,
        stale_after_seconds: int = 30,
    ):
        self.ledger = ledger
        self.risk_gate = risk_gate
        self.adapters = {Provider(name): adapter for name, adapter in adapters.items()}
        self.callback_targets = {Provider(name): url for name, url in (callback_targets or {}).items()}
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.ingress = CallbackIngress(
            ledger,
            card=self.adapters.get(Provider.CARD),
            mobile_money=self.adapters.get(Provider.MOBILE_MONEY),
        )

    def adapter_for(self, provider) -> ProviderAdapter:
        try:
            provider = Provider(provider)
        except ValueError:
            raise ValidationError(f"Unsupported provider: {provider}")
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValidationError(f"Provider {provider.value} is not configured")
        return adapter

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    def initiate(
        self,
        order_id: str,
        user_id: str,
        amount: int,
        currency: str,
        provider: str,
        provider_params: dict | None = None,
        request_context: dict | None = None,
        metadata: dict | None = None,
    ) -> InitiateResult:
        if not order_id:
            raise ValidationError("order_id is required")
        if not user_id:
            raise ValidationError("user_id is required")
        amount = validate_amount(amount)
        normalized_currency = normalize_currency(currency)
        if normalized_currency is None:
            raise ValidationError(f"Unsupported currency: {currency}")
        metadata = validate_metadata(metadata)
        adapter = self.adapter_for(provider)
        params = adapter.validate_params(amount, normalized_currency, provider_params or {})

        existing = self.ledger.blocking_payment_for_order(order_id)
        if existing is not None:
            raise ConflictError(f"Order {order_id} already has a {existing.status} payment")

        assessment = self._assess(order_id, user_id, amount, normalized_currency, request_context)
        payment = self.ledger.create(
            order_id=order_id,
            user_id=user_id,
            provider=adapter.name,
            amount=amount,
            currency=normalized_currency,
            phone_number=params.get("phone_number"),
            risk_snapshot=assessment.to_snapshot(),
            metadata_=metadata,
            provider_params=params,
        )

        if assessment.blocked:
            message = "Transaction blocked by risk assessment"
            if assessment.reasons:
                message = f"{message}: {', '.join(assessment.reasons)}"
            self.ledger.transition(payment.id, PaymentStatus.FAILED, error_message=message)
            logger.warning(
                "payment_blocked_by_risk",
                payment_id=payment.id,
                order_id=order_id,
                score=assessment.score,
                reasons=assessment.reasons,
            )
            raise RiskBlockedError(message, payment_id=payment.id, reasons=assessment.reasons)

        try:
            result = adapter.initiate(
                amount,
                normalized_currency,
                payment.id,
                self.callback_targets.get(Provider(adapter.name)),
                {**params, "order_id": order_id, "user_id": user_id},
            )
        except ProviderError as exc:
            if exc.timed_out:
                # money movement unknown: stays pending for reconciliation
                self.ledger.note_error(payment.id, exc.message)
                logger.error("payment_initiation_timed_out", payment_id=payment.id, provider=adapter.name)
            else:
                self.ledger.transition(payment.id, PaymentStatus.FAILED, error_message=exc.message)
                logger.error(
                    "payment_initiation_failed",
                    payment_id=payment.id,
                    provider=adapter.name,
                    error=exc.message,
                )
            raise ProviderInitiationError(exc.message, payment_id=payment.id, timed_out=exc.timed_out)

        payment = self._attach_session(payment, result)

        logger.info(
            "payment_initiated",
            payment_id=payment.id,
            order_id=order_id,
            provider=adapter.name,
            status=payment.status,
            risk_action=assessment.action,
        )
        return InitiateResult(
            payment_id=payment.id,
            status=payment.status,
            provider_handle=result.provider_transaction_id,
            client_instructions=result.client_instructions,
            risk_summary=summarize(assessment),
        )

    def _attach_session(self, payment: Payment, result) -> Payment:
        payment = self.ledger.attach_provider_session(
            payment.id,
            result.provider_transaction_id,
            phone_number=result.phone_number,
        )
        if result.mode == Mode.ASYNC:
            try:
                payment = self.ledger.transition(payment.id, PaymentStatus.PROCESSING).payment
            except InvalidTransitionError:
                # the callback beat us to it
                payment = self.ledger.get(payment.id)
        return payment

    def _assess(self, order_id, user_id, amount, currency, request_context) -> RiskAssessment:
        transaction = {"order_id": order_id, "user_id": user_id, "amount": amount, "currency": currency}
        try:
            return self.risk_gate.assess(transaction, request_context or {})
        except Exception:
            logger.exception("risk_gate_failed", order_id=order_id)
            return RiskAssessment(enabled=True, score=0, action=ALLOW, reasons=["fraud_check_error"])

    # ------------------------------------------------------------------
    # confirm / refund / cancel
    # ------------------------------------------------------------------

    def confirm(self, payment_id: str) -> Payment:
        payment = self.ledger.get(payment_id)
        if payment.status not in [s.value for s in ACTIVE_STATUSES]:
            logger.info("payment_confirm_noop", payment_id=payment_id, status=payment.status)
            return payment
        if not payment.provider_transaction_id:
            raise ValidationError("Payment has no provider session to confirm")

        adapter = self.adapter_for(payment.provider)
        try:
            result = adapter.confirm(payment.provider_transaction_id)
        except ProviderError as exc:
            logger.error("payment_confirm_failed", payment_id=payment_id, error=exc.message)
            try:
                self.ledger.transition(payment_id, PaymentStatus.FAILED, error_message=exc.message)
            except InvalidTransitionError:
                current = self.ledger.get(payment_id)
                logger.warning("payment_confirm_failed_after_terminal", payment_id=payment_id, status=current.status)
                return current
            raise ProviderConfirmationError(exc.message)

        return apply_outcome(
            self.ledger,
            payment,
            result.status,
            method_descriptor=result.method_descriptor,
            capture_id=result.capture_id,
            error_message=result.error_message,
        )

    def refund(self, payment_id: str, amount: int | None = None) -> Payment:
        payment = self.ledger.get(payment_id)
        if payment.status != PaymentStatus.SUCCEEDED.value:
            raise InvalidTransitionError(f"Can only refund succeeded payments (payment is {payment.status})")

        remaining = payment.refundable_amount
        if amount is None:
            amount = remaining
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Invalid refund amount")
        if amount > remaining:
            raise ValidationError(f"Refund amount {amount} exceeds refundable balance {remaining}")

        adapter = self.adapter_for(payment.provider)
        try:
            result = adapter.refund(payment, amount)
        except ProviderError as exc:
            logger.error("payment_refund_failed", payment_id=payment_id, amount=amount, error=exc.message)
            raise RefundError(exc.message)

        logger.info("payment_refunded", payment_id=payment_id, refund_id=result.refund_id, amount=result.refunded_amount)
        return self.ledger.transition(
            payment_id,
            PaymentStatus.REFUNDED,
            refund_id=result.refund_id,
            refund_amount=(payment.refund_amount or 0) + result.refunded_amount,
        ).payment

    def cancel(self, payment_id: str) -> Payment:
        payment = self.ledger.get(payment_id)
        if payment.status == PaymentStatus.CANCELED.value:
            return payment
        if payment.status != PaymentStatus.PENDING.value:
            raise InvalidTransitionError(f"Can only cancel pending payments (payment is {payment.status})")

        if payment.provider_transaction_id:
            adapter = self.adapter_for(payment.provider)
            try:
                adapter.cancel(payment.provider_transaction_id)
            except ProviderError as exc:
                logger.error("payment_cancel_failed", payment_id=payment_id, error=exc.message)
                raise ProviderCancellationError(exc.message)

        logger.info("payment_canceled", payment_id=payment_id)
        return self.ledger.transition(payment_id, PaymentStatus.CANCELED).payment

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def get_status(self, payment_id: str) -> Payment:
        return self._refresh_if_stale(self.ledger.get(payment_id))

    def get_status_by_order(self, order_id: str) -> Payment:
        payment = self.ledger.latest_for_order(order_id)
        if payment is None:
            raise NotFoundError(f"No payment found for order {order_id}")
        return self._refresh_if_stale(payment)

    def _refresh_if_stale(self, payment: Payment) -> Payment:
        if payment.status != PaymentStatus.PROCESSING.value or not payment.provider_transaction_id:
            return payment
        if datetime.now(timezone.utc) - _as_utc(payment.updated_at) < self.stale_after:
            return payment
        try:
            return self._poll(payment)
        except (ProviderError, InvalidTransitionError) as exc:
            logger.warning("payment_status_poll_failed", payment_id=payment.id, error=str(exc))
            return self.ledger.get(payment.id)

    def reconcile(self, payment_id: str) -> Payment:
        """Query the provider now, whatever the record's age."""
        payment = self.ledger.get(payment_id)
        if payment.status not in [s.value for s in ACTIVE_STATUSES]:
            return payment
        try:
            if not payment.provider_transaction_id:
                payment = self._recover_session(payment)
            return self._poll(payment)
        except ProviderError as exc:
            raise ProviderQueryError(exc.message)

    def _recover_session(self, payment: Payment) -> Payment:
        """
        Re-send a timed-out initiate under the same reference so the provider
        returns the session it may already have opened. Only providers whose
        create call is idempotent can do this. The rest (mobile money) would
        prompt the payer a second time, so those records can only be cancelled.
        """
        adapter = self.adapter_for(payment.provider)
        if not adapter.IDEMPOTENT_INITIATE:
            raise ValidationError(
                "Payment has no provider session to reconcile; cancel it and start a new attempt"
            )
        result = adapter.initiate(
            payment.amount,
            payment.currency,
            payment.id,
            self.callback_targets.get(Provider(adapter.name)),
            {**(payment.provider_params or {}), "order_id": payment.order_id, "user_id": payment.user_id},
        )
        payment = self._attach_session(payment, result)
        logger.info(
            "payment_session_recovered",
            payment_id=payment.id,
            provider=adapter.name,
            provider_transaction_id=result.provider_transaction_id,
        )
        return payment

    def _poll(self, payment: Payment) -> Payment:
        adapter = self.adapter_for(payment.provider)
        result = adapter.query(payment.provider_transaction_id)
        logger.info("payment_status_polled", payment_id=payment.id, outcome=result.status.value)
        return self.ingress.apply_query_result(payment, result)

    # ------------------------------------------------------------------
    # history
    # ------------------------------------------------------------------

    def list_user_payments(self, user_id: str, limit: int = 50) -> list[Payment]:
        return self.ledger.list_for_user(user_id, limit=max(1, min(limit, 100)))

    def payment_stats(self, user_id: str, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
        return self.ledger.stats(user_id, start, end)
