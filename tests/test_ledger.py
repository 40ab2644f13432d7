import threading

import pytest

from paygate.errors import ConflictError, InvalidTransitionError, NotFoundError
from paygate.models import PaymentStatus


def _payment(ledger, order_id="ORDER-100", provider="card", ptid="pi_123", **fields):
    payment = ledger.create(
        order_id=order_id,
        user_id=fields.pop("user_id", "user-1"),
        provider=provider,
        amount=fields.pop("amount", 5000),
        currency=fields.pop("currency", "usd"),
        **fields,
    )
    if ptid:
        payment = ledger.attach_provider_session(payment.id, ptid)
    return payment


def test_create_forces_pending(ledger):
    payment = ledger.create(
        order_id="ORDER-1", user_id="user-1", provider="card", amount=100, currency="usd", status="succeeded"
    )
    assert payment.status == "pending"
    assert ledger.get(payment.id).status == "pending"


def test_get_unknown_payment(ledger):
    with pytest.raises(NotFoundError):
        ledger.get("missing")


@pytest.mark.parametrize(
    "path",
    [
        ["processing", "succeeded", "refunded"],
        ["processing", "failed"],
        ["succeeded"],
        ["failed"],
        ["canceled"],
    ],
)
def test_allowed_paths(ledger, path):
    payment = _payment(ledger)
    for status in path:
        result = ledger.transition(payment.id, status)
        assert result.applied is True
        assert result.payment.status == status


@pytest.mark.parametrize(
    "path, rejected",
    [
        (["processing"], "canceled"),
        (["failed"], "succeeded"),
        (["succeeded"], "failed"),
        (["canceled"], "processing"),
        (["succeeded", "refunded"], "succeeded"),
        ([], "refunded"),
        ([], "pending"),
    ],
)
def test_rejected_transitions_leave_record_untouched(ledger, notifier, path, rejected):
    payment = _payment(ledger)
    for status in path:
        ledger.transition(payment.id, status)
    before = ledger.get(payment.id).status
    notified = len(notifier.calls)

    with pytest.raises(InvalidTransitionError):
        ledger.transition(payment.id, rejected)

    assert ledger.get(payment.id).status == before
    assert len(notifier.calls) == notified


def test_reapplying_current_status_is_noop(ledger, notifier):
    payment = _payment(ledger)
    first = ledger.transition(payment.id, "succeeded", method_descriptor="pm_card_visa")
    second = ledger.transition(payment.id, "succeeded", method_descriptor="pm_card_visa")

    assert first.applied is True
    assert second.applied is False
    assert second.payment.method_descriptor == "pm_card_visa"
    assert notifier.calls == [(payment.id, "succeeded")]


def test_reapply_with_different_terminal_data_is_rejected(ledger):
    payment = _payment(ledger)
    ledger.transition(payment.id, "succeeded", method_descriptor="pm_card_visa")

    with pytest.raises(InvalidTransitionError):
        ledger.transition(payment.id, "succeeded", method_descriptor="pm_card_mastercard")

    assert ledger.get(payment.id).method_descriptor == "pm_card_visa"


def test_reapply_fills_missing_terminal_data(ledger, notifier):
    """A poll result without a receipt followed by the callback that has one."""
    payment = _payment(ledger, provider="mobile_money", ptid="ws_CO_1", currency="kes")
    ledger.transition(payment.id, "processing")
    ledger.transition(payment.id, "succeeded")

    result = ledger.transition(payment.id, "succeeded", method_descriptor="NLJ7RT61SV")

    assert result.applied is False
    assert result.payment.method_descriptor == "NLJ7RT61SV"
    assert notifier.calls == [(payment.id, "succeeded")]


def test_processing_reapplied_while_processing(ledger):
    payment = _payment(ledger)
    ledger.transition(payment.id, "processing")
    result = ledger.transition(payment.id, "processing")
    assert result.applied is False
    assert result.payment.status == "processing"


def test_transition_rejects_unknown_fields(ledger):
    payment = _payment(ledger)
    with pytest.raises(ValueError):
        ledger.transition(payment.id, "succeeded", amount=1)


def test_transition_unknown_payment(ledger):
    with pytest.raises(NotFoundError):
        ledger.transition("missing", "succeeded")


def test_only_terminal_transitions_notify(ledger, notifier):
    payment = _payment(ledger)
    ledger.transition(payment.id, "processing")
    assert notifier.calls == []
    ledger.transition(payment.id, "failed", error_message="card_declined")
    assert notifier.calls == [(payment.id, "failed")]


def test_notifier_failure_does_not_break_transition(session_factory):
    from paygate.ledger import PaymentLedger

    class BrokenNotifier:
        def payment_status_changed(self, payment):
            raise RuntimeError("notification service down")

    ledger = PaymentLedger(session_factory, notifier=BrokenNotifier())
    payment = _payment(ledger)
    result = ledger.transition(payment.id, "succeeded")
    assert result.applied is True
    assert ledger.get(payment.id).status == "succeeded"


def test_one_active_payment_per_order(ledger):
    _payment(ledger, order_id="ORDER-1")
    with pytest.raises(ConflictError):
        ledger.create(order_id="ORDER-1", user_id="user-1", provider="card", amount=100, currency="usd")


def test_new_attempt_allowed_after_failure(ledger):
    first = _payment(ledger, order_id="ORDER-1", ptid="pi_first")
    ledger.transition(first.id, "failed")

    second = _payment(ledger, order_id="ORDER-1", ptid="pi_second")

    assert second.id != first.id
    assert ledger.latest_for_order("ORDER-1").id == second.id


def test_blocking_payment_includes_succeeded(ledger):
    payment = _payment(ledger, order_id="ORDER-1")
    ledger.transition(payment.id, "succeeded")
    assert ledger.blocking_payment_for_order("ORDER-1").id == payment.id
    assert ledger.blocking_payment_for_order("ORDER-2") is None


def test_provider_transaction_id_lookup(ledger):
    payment = _payment(ledger, ptid="pi_lookup")
    assert ledger.find_by_provider_transaction_id("pi_lookup").id == payment.id
    assert ledger.find_by_provider_transaction_id("pi_lookup", "card").id == payment.id
    assert ledger.find_by_provider_transaction_id("pi_lookup", "wallet") is None


def test_provider_session_attached_once(ledger):
    payment = _payment(ledger, ptid="pi_1")
    # same id again is fine
    assert ledger.attach_provider_session(payment.id, "pi_1").provider_transaction_id == "pi_1"
    with pytest.raises(InvalidTransitionError):
        ledger.attach_provider_session(payment.id, "pi_2")


def test_duplicate_provider_transaction_id(ledger):
    _payment(ledger, order_id="ORDER-1", ptid="pi_dup")
    other = _payment(ledger, order_id="ORDER-2", ptid=None)
    with pytest.raises(ConflictError):
        ledger.attach_provider_session(other.id, "pi_dup")


def test_note_error_keeps_status(ledger):
    payment = _payment(ledger, ptid=None)
    updated = ledger.note_error(payment.id, "Card processor unreachable during initiate")
    assert updated.status == "pending"
    assert updated.error_message == "Card processor unreachable during initiate"


def test_concurrent_success_applied_once(ledger, notifier):
    """Webhook and confirm racing on the same outcome: one applies, the other is a no-op."""
    payment = _payment(ledger)
    ledger.transition(payment.id, "processing")

    barrier = threading.Barrier(2)
    results, errors = [], []

    def deliver():
        barrier.wait()
        try:
            results.append(ledger.transition(payment.id, PaymentStatus.SUCCEEDED, method_descriptor="pm_card_visa"))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(result.applied for result in results) == [False, True]
    assert ledger.get(payment.id).status == "succeeded"
    assert notifier.calls == [(payment.id, "succeeded")]


def test_concurrent_conflicting_outcomes(ledger, notifier):
    """Success and failure racing: exactly one wins, the loser is rejected."""
    payment = _payment(ledger)
    ledger.transition(payment.id, "processing")

    barrier = threading.Barrier(2)
    applied, rejected = [], []

    def deliver(status):
        barrier.wait()
        try:
            applied.append(ledger.transition(payment.id, status).payment.status)
        except InvalidTransitionError:
            rejected.append(status)

    threads = [threading.Thread(target=deliver, args=(s,)) for s in ("succeeded", "failed")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(applied) == 1
    assert len(rejected) == 1
    assert ledger.get(payment.id).status == applied[0]
    assert notifier.calls == [(payment.id, applied[0])]


def test_user_history_and_stats(ledger):
    paid = _payment(ledger, order_id="ORDER-1", ptid="pi_1", amount=1000)
    ledger.transition(paid.id, "succeeded")
    failed = _payment(ledger, order_id="ORDER-2", ptid="pi_2", amount=2500)
    ledger.transition(failed.id, "failed")
    _payment(ledger, order_id="ORDER-3", ptid="pi_3", amount=700, user_id="user-2")

    history = ledger.list_for_user("user-1")
    assert {p.order_id for p in history} == {"ORDER-1", "ORDER-2"}
    assert len(ledger.list_for_user("user-1", limit=1)) == 1

    stats = ledger.stats("user-1")
    assert stats == [
        {"provider": "card", "status": "failed", "count": 1, "total_amount": 2500},
        {"provider": "card", "status": "succeeded", "count": 1, "total_amount": 1000},
    ]
