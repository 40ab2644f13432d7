"""
PaymentLedger: the only writer of ``payments`` rows.

Every status change is one guarded statement:

    UPDATE payments SET status = :target, ...
     WHERE id = :id AND status IN (:allowed_prior)

``rowcount == 0`` means the row was not in an allowed prior state, usually
because a concurrent writer (webhook, callback, poll, confirm) got there
first. The ledger then re-reads the row: if it already holds the target
status with compatible terminal data the call is a no-op success, anything
else is an invalid transition.
"""
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from paygate.errors import ConflictError, InvalidTransitionError, NotFoundError
from paygate.models import ACTIVE_STATUSES, Payment, PaymentStatus

logger = structlog.get_logger(__name__)

ALLOWED_PRIOR_STATES = {
    PaymentStatus.PROCESSING: (PaymentStatus.PENDING,),
    PaymentStatus.SUCCEEDED: (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    PaymentStatus.FAILED: (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    PaymentStatus.CANCELED: (PaymentStatus.PENDING,),
    PaymentStatus.REFUNDED: (PaymentStatus.SUCCEEDED,),
}

TERMINAL_STATUSES = frozenset(
    {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED, PaymentStatus.REFUNDED}
)

# Compared when a transition is re-applied onto a row already in the target status
TERMINAL_FIELDS = ("method_descriptor", "provider_capture_id", "refund_id", "refund_amount")

# Fields a transition may carry along with the status
TRANSITION_FIELDS = frozenset(
    {
        "method_descriptor",
        "refund_id",
        "refund_amount",
        "error_message",
        "provider_capture_id",
        "phone_number",
    }
)


@dataclass
class TransitionResult:
    payment: Payment
    applied: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def allowed_prior_states(target: PaymentStatus) -> tuple:
    return ALLOWED_PRIOR_STATES.get(PaymentStatus(target), ())


class PaymentLedger:
    def __init__(self, session_factory, notifier=None):
        self._session_factory = session_factory
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, payment_id: str) -> Payment:
        with self._session_factory() as db:
            payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def find_by_provider_transaction_id(self, provider_transaction_id: str, provider: str | None = None) -> Payment | None:
        query = select(Payment).where(Payment.provider_transaction_id == provider_transaction_id)
        if provider:
            query = query.where(Payment.provider == provider)
        with self._session_factory() as db:
            return db.execute(query).scalars().first()

    def latest_for_order(self, order_id: str, provider: str | None = None) -> Payment | None:
        query = select(Payment).where(Payment.order_id == order_id)
        if provider:
            query = query.where(Payment.provider == provider)
        query = query.order_by(Payment.created_at.desc())
        with self._session_factory() as db:
            return db.execute(query).scalars().first()

    def blocking_payment_for_order(self, order_id: str) -> Payment | None:
        """An in-flight or already-paid attempt that forbids a new one."""
        blocking = [s.value for s in ACTIVE_STATUSES] + [PaymentStatus.SUCCEEDED.value]
        query = select(Payment).where(Payment.order_id == order_id, Payment.status.in_(blocking))
        with self._session_factory() as db:
            return db.execute(query).scalars().first()

    def list_for_user(self, user_id: str, limit: int = 50) -> list[Payment]:
        query = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return list(db.execute(query).scalars().all())

    def stats(self, user_id: str, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
        query = (
            select(
                Payment.provider,
                Payment.status,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount), 0),
            )
            .where(Payment.user_id == user_id)
            .group_by(Payment.provider, Payment.status)
            .order_by(Payment.provider, Payment.status)
        )
        if start is not None:
            query = query.where(Payment.created_at >= start)
        if end is not None:
            query = query.where(Payment.created_at <= end)
        with self._session_factory() as db:
            rows = db.execute(query).all()
        return [
            {"provider": provider, "status": status, "count": count, "total_amount": int(total)}
            for provider, status, count, total in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, **fields) -> Payment:
        payment = Payment(**fields)
        payment.status = PaymentStatus.PENDING.value
        with self._session_factory() as db:
            db.add(payment)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError(f"Order {fields.get('order_id')} already has a payment in progress")
        logger.info(
            "payment_record_created",
            payment_id=payment.id,
            order_id=payment.order_id,
            provider=payment.provider,
        )
        return payment

    def attach_provider_session(self, payment_id: str, provider_transaction_id: str, **fields) -> Payment:
        """Record the provider correlation id on a pending row that has none yet."""
        values = {"provider_transaction_id": provider_transaction_id, "updated_at": _utcnow()}
        values.update({k: v for k, v in fields.items() if k in TRANSITION_FIELDS})
        statement = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.provider_transaction_id.is_(None),
            )
            .values(**values)
        )
        with self._session_factory() as db:
            try:
                result = db.execute(statement)
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError(f"Provider transaction {provider_transaction_id} is already recorded")
            payment = db.get(Payment, payment_id)

        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if result.rowcount == 0 and payment.provider_transaction_id != provider_transaction_id:
            raise InvalidTransitionError(
                f"Payment {payment_id} cannot take provider session {provider_transaction_id}"
            )
        return payment

    def note_error(self, payment_id: str, error_message: str) -> Payment:
        """Record an error on a still-pending row without changing its status."""
        statement = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(error_message=error_message, updated_at=_utcnow())
        )
        with self._session_factory() as db:
            db.execute(statement)
            db.commit()
            payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def transition(self, payment_id: str, target, **fields) -> TransitionResult:
        target = PaymentStatus(target)
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
        prior = [s.value for s in allowed_prior_states(target)]
        if not prior:
            raise InvalidTransitionError(f"No transition leads to {target.value}")

        values = {"status": target.value, "updated_at": _utcnow()}
        values.update({k: v for k, v in fields.items() if v is not None})
        statement = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(prior))
            .values(**values)
        )
        with self._session_factory() as db:
            result = db.execute(statement)
            db.commit()
            applied = result.rowcount == 1
            payment = db.get(Payment, payment_id)

        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        if applied:
            logger.info(
                "payment_transition_applied",
                payment_id=payment_id,
                status=target.value,
                provider=payment.provider,
            )
            if target in TERMINAL_STATUSES:
                self._notify(payment)
            return TransitionResult(payment=payment, applied=True)

        return self._reapply(payment, target, fields)

    def _reapply(self, payment: Payment, target: PaymentStatus, fields: dict) -> TransitionResult:
        if payment.status != target.value:
            logger.warning(
                "payment_transition_rejected",
                payment_id=payment.id,
                current=payment.status,
                requested=target.value,
            )
            raise InvalidTransitionError(
                f"Payment {payment.id} cannot move from {payment.status} to {target.value}"
            )

        conflicts = [
            name
            for name in TERMINAL_FIELDS
            if fields.get(name) is not None
            and getattr(payment, name) is not None
            and getattr(payment, name) != fields[name]
        ]
        if conflicts:
            logger.warning(
                "payment_transition_conflict",
                payment_id=payment.id,
                status=target.value,
                fields=conflicts,
            )
            raise InvalidTransitionError(
                f"Payment {payment.id} is already {target.value} with different {', '.join(conflicts)}"
            )

        missing = {
            name: fields[name]
            for name in TERMINAL_FIELDS
            if fields.get(name) is not None and getattr(payment, name) is None
        }
        if missing:
            payment = self._enrich(payment.id, target, missing)

        logger.info("payment_transition_noop", payment_id=payment.id, status=target.value)
        return TransitionResult(payment=payment, applied=False)

    def _enrich(self, payment_id: str, status: PaymentStatus, missing: dict) -> Payment:
        conditions = [Payment.id == payment_id, Payment.status == status.value]
        conditions += [getattr(Payment, name).is_(None) for name in missing]
        statement = update(Payment).where(*conditions).values(updated_at=_utcnow(), **missing)
        with self._session_factory() as db:
            db.execute(statement)
            db.commit()
            return db.get(Payment, payment_id)

    def _notify(self, payment: Payment) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.payment_status_changed(payment)
        except Exception:
            logger.exception("payment_notification_failed", payment_id=payment.id, status=payment.status)
