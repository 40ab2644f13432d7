"""
Card payments through Stripe PaymentIntents.

The intent is created synchronously, but the authoritative final status
arrives through the ``payment_intent.*`` webhooks, which can land before or
after an explicit confirm. Both paths resolve through ``OUTCOMES`` /
``WEBHOOK_EVENTS`` and end in the same ledger transition.
"""
import stripe
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
from paygate.errors import ProviderError, SignatureVerificationError
from paygate.models import Provider

logger = structlog.get_logger(__name__)


def stripe_id(value) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class CardAdapter(ProviderAdapter):
    name = Provider.CARD.value

    # PaymentIntent.status -> outcome
    OUTCOMES = {
        "requires_payment_method": Outcome.FAILED,
        "requires_confirmation": Outcome.PENDING,
        "requires_action": Outcome.PENDING,
        "requires_capture": Outcome.PROCESSING,
        "processing": Outcome.PROCESSING,
        "succeeded": Outcome.SUCCEEDED,
        "canceled": Outcome.CANCELED,
    }
    DEFAULT_OUTCOME = Outcome.PROCESSING
    IDEMPOTENT_INITIATE = True

    # webhook event type -> outcome
    WEBHOOK_EVENTS = {
        "payment_intent.processing": Outcome.PROCESSING,
        "payment_intent.succeeded": Outcome.SUCCEEDED,
        "payment_intent.payment_failed": Outcome.FAILED,
        "payment_intent.canceled": Outcome.CANCELED,
    }

    def __init__(self, api_key: str | None, webhook_secret: str | None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _intent_outcome(self, intent) -> Outcome:
        # a fresh intent also waits in requires_payment_method; only a decline carries an error
        if intent.status == "requires_payment_method" and not getattr(intent, "last_payment_error", None):
            return Outcome.PENDING
        return self.outcome_for(intent.status)

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except stripe.APIConnectionError as exc:
            logger.error("stripe_unreachable", operation=operation, error=exc.user_message or str(exc))
            raise ProviderError(f"Card processor unreachable during {operation}", timed_out=True)
        except stripe.StripeError as exc:
            logger.error("stripe_request_failed", operation=operation, error=exc.user_message or str(exc))
            raise ProviderError(exc.user_message or f"Card processor rejected {operation}")

    def initiate(self, amount, currency, reference, callback_target, params):
        intent = self._call(
            "initiate",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency.lower(),
            metadata={
                "payment_id": reference,
                "order_id": params.get("order_id", ""),
                "user_id": params.get("user_id", ""),
            },
            automatic_payment_methods={"enabled": True},
            idempotency_key=reference,
        )
        return InitiationResult(
            provider_transaction_id=intent.id,
            mode=Mode.SYNC,
            client_instructions={"client_secret": intent.client_secret, "payment_intent_id": intent.id},
        )

    def confirm(self, provider_transaction_id):
        intent = self._call("confirm", stripe.PaymentIntent.confirm, provider_transaction_id)
        status = self._intent_outcome(intent)
        error = getattr(intent, "last_payment_error", None)
        return ConfirmationResult(
            status=status,
            method_descriptor=stripe_id(getattr(intent, "payment_method", None)),
            error_message=getattr(error, "message", None) if status == Outcome.FAILED else None,
            raw={"status": intent.status},
        )

    def query(self, provider_transaction_id):
        intent = self._call("query", stripe.PaymentIntent.retrieve, provider_transaction_id)
        status = self._intent_outcome(intent)
        return QueryResult(
            status=status,
            method_descriptor=stripe_id(getattr(intent, "payment_method", None)),
            raw={"status": intent.status},
        )

    def refund(self, payment, amount):
        # refunds are issued against the charge, not the intent
        intent = self._call("refund", stripe.PaymentIntent.retrieve, payment.provider_transaction_id)
        charge_id = stripe_id(getattr(intent, "latest_charge", None))
        if not charge_id:
            raise ProviderError("No charge found for this payment intent")
        refund = self._call("refund", stripe.Refund.create, charge=charge_id, amount=amount)
        return RefundResult(refund_id=refund.id, refunded_amount=refund.amount)

    def cancel(self, provider_transaction_id):
        self._call("cancel", stripe.PaymentIntent.cancel, provider_transaction_id)

    def construct_event(self, raw_body: bytes, signature: str | None):
        """Verify the signature over the exact bytes received and parse the event."""
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_missing")
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing stripe-signature header")
        try:
            return stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except ValueError:
            raise SignatureVerificationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise SignatureVerificationError("Invalid signature")
