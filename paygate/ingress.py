"""
CallbackIngress: inbound provider events.

Webhooks, callbacks and poll results all end in ``apply_outcome``, the same
call the orchestrator makes after confirm/query, so a given outcome is
applied at most once whichever channel delivers it first.
"""
import structlog

from paygate.adapters import Outcome
from paygate.errors import InvalidTransitionError
from paygate.models import Payment, PaymentStatus, Provider
from paygate.stripe_service import stripe_id

logger = structlog.get_logger(__name__)

MOBILE_MONEY_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def apply_outcome(
    ledger,
    payment: Payment,
    outcome: Outcome,
    method_descriptor: str | None = None,
    capture_id: str | None = None,
    error_message: str | None = None,
) -> Payment:
    """Translate a universal outcome into a guarded ledger transition."""
    outcome = Outcome(outcome)
    if outcome == Outcome.PENDING:
        return ledger.get(payment.id)
    if outcome == Outcome.SUCCEEDED:
        fields = {"method_descriptor": method_descriptor, "provider_capture_id": capture_id}
    elif outcome == Outcome.PROCESSING:
        fields = {"provider_capture_id": capture_id}
    elif outcome == Outcome.FAILED:
        fields = {"error_message": error_message or "Payment failed"}
    else:
        fields = {}
    return ledger.transition(payment.id, outcome.status, **fields).payment


class CallbackIngress:
    def __init__(self, ledger, card=None, mobile_money=None):
        self.ledger = ledger
        self.card = card
        self.mobile_money = mobile_money

    # ------------------------------------------------------------------
    # Card webhook
    # ------------------------------------------------------------------

    def handle_card_webhook(self, raw_body: bytes, signature: str | None) -> dict:
        """
        Verify, then apply. Signature failures raise (nothing is trusted or
        written); processing failures are logged and still acknowledged so the
        processor does not retry in a loop.
        """
        if self.card is None:
            logger.error("card_webhook_without_adapter")
            return {"received": True}
        event = self.card.construct_event(raw_body, signature)
        try:
            self._apply_card_event(event)
        except InvalidTransitionError as exc:
            logger.info("card_webhook_stale_event", event_type=event["type"], reason=exc.message)
        except Exception:
            logger.exception("card_webhook_processing_failed", event_type=event["type"])
        return {"received": True}

    def _apply_card_event(self, event) -> Payment | None:
        event_type = event["type"]
        obj = event["data"]["object"]

        if event_type == "charge.refunded":
            return self._apply_card_refund(obj)

        outcome = self.card.WEBHOOK_EVENTS.get(event_type)
        if outcome is None:
            logger.info("card_webhook_unhandled", event_type=event_type)
            return None

        payment = self.ledger.find_by_provider_transaction_id(obj["id"], Provider.CARD.value)
        if payment is None:
            logger.warning("card_webhook_unknown_intent", intent_id=obj["id"], event_type=event_type)
            return None

        error = obj.get("last_payment_error") or {}
        return apply_outcome(
            self.ledger,
            payment,
            outcome,
            method_descriptor=stripe_id(obj.get("payment_method")),
            error_message=error.get("message") if outcome == Outcome.FAILED else None,
        )

    def _apply_card_refund(self, charge) -> Payment | None:
        intent_id = stripe_id(charge.get("payment_intent"))
        if not intent_id:
            return None
        payment = self.ledger.find_by_provider_transaction_id(intent_id, Provider.CARD.value)
        if payment is None:
            logger.warning("card_webhook_unknown_intent", intent_id=intent_id, event_type="charge.refunded")
            return None
        refunds = (charge.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else None
        return self.ledger.transition(
            payment.id,
            PaymentStatus.REFUNDED,
            refund_id=refund_id,
            refund_amount=charge.get("amount_refunded"),
        ).payment

    # ------------------------------------------------------------------
    # Mobile money callback
    # ------------------------------------------------------------------

    def handle_mobile_money_callback(self, payload) -> dict:
        """
        Trusted by network path only: this integration carries no signature.
        Always acknowledged with ResultCode 0.
        """
        try:
            self._apply_mobile_money_callback(payload)
        except InvalidTransitionError as exc:
            logger.info("mobile_money_callback_stale", reason=exc.message)
        except Exception:
            logger.exception("mobile_money_callback_processing_failed")
        return dict(MOBILE_MONEY_ACK)

    def _apply_mobile_money_callback(self, payload) -> Payment | None:
        if self.mobile_money is None:
            logger.error("mobile_money_callback_without_adapter")
            return None
        checkout_request_id, result = self.mobile_money.parse_callback(payload)
        logger.info(
            "mobile_money_callback_received",
            checkout_request_id=checkout_request_id,
            result_code=result.raw.get("ResultCode"),
        )
        payment = self.ledger.find_by_provider_transaction_id(checkout_request_id, Provider.MOBILE_MONEY.value)
        if payment is None:
            logger.warning("mobile_money_callback_unknown_checkout", checkout_request_id=checkout_request_id)
            return None
        return apply_outcome(
            self.ledger,
            payment,
            result.status,
            method_descriptor=result.method_descriptor,
            capture_id=result.capture_id,
            error_message=result.error_message,
        )

    # ------------------------------------------------------------------
    # Poll results
    # ------------------------------------------------------------------

    def apply_query_result(self, payment: Payment, result) -> Payment:
        return apply_outcome(
            self.ledger,
            payment,
            result.status,
            method_descriptor=result.method_descriptor,
            capture_id=result.capture_id,
            error_message=result.error_message,
        )
