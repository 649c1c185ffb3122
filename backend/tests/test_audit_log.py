"""
Event audit log tests.
"""
from unittest.mock import Mock

from backend.core.errors import PersistenceError
from backend.features.audit.service import PAYLOAD_TRUNCATE, EventAuditLog
from backend.features.billing.events import normalize_stripe_event
from backend.features.billing.reconciler import ReconciliationOutcome
from backend.models.billing import EventLogStatus, EventSource


def _event(**obj):
    return normalize_stripe_event({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "customer": "cus_1", **obj}},
    })


def _outcome(event, **fields):
    outcome = ReconciliationOutcome(event_id=event.event_id, kind=event.kind)
    outcome.succeed("activate_subscription", "Activated monthly plan")
    for key, value in fields.items():
        setattr(outcome, key, value)
    return outcome


def test_record_maps_event_and_outcome(store, audit, make_user):
    user = make_user()
    event = _event(customer_email=user.email)
    outcome = _outcome(event, payment_id="p1")
    outcome.attach_user(user)

    entry = audit.record(event, outcome)

    assert entry.id is not None
    assert entry.event_type == "checkout_completed"
    assert entry.source == EventSource.STRIPE_WEBHOOK
    assert entry.status == EventLogStatus.SUCCESS
    assert entry.user_id == user.user_id
    assert entry.stripe_event_id == "evt_1"
    assert entry.stripe_session_id == "cs_1"
    assert entry.stripe_customer_id == "cus_1"
    assert entry.event_data["payment_id"] == "p1"
    assert store.list_event_logs()[0].id == entry.id


def test_record_failed_outcome_carries_error(audit):
    event = _event()
    outcome = ReconciliationOutcome(event_id=event.event_id, kind=event.kind)
    outcome.fail("find_user", "User not found", result="No user matched (customer_id=cus_1)")

    entry = audit.record(event, outcome)

    assert entry.status == EventLogStatus.FAILED
    assert entry.error_message == "User not found"
    assert entry.result == "No user matched (customer_id=cus_1)"
    assert entry.user_id is None


def test_payload_is_stored_structured(store, audit):
    event = _event(mode="payment", amount_total=9900, metadata={"plan": "lifetime"})
    audit.record(event, _outcome(event))

    stored = store.list_event_logs()[0].event_data["object"]
    assert isinstance(stored, dict)
    assert stored["id"] == "cs_1"
    assert stored["amount_total"] == 9900
    assert stored["metadata"] == {"plan": "lifetime"}


def test_large_string_leaves_are_truncated(audit):
    event = _event(description="x" * (PAYLOAD_TRUNCATE * 2), line_items={"data": [{"quantity": 1}]})
    entry = audit.record(event, _outcome(event))

    obj = entry.event_data["object"]
    assert obj["id"] == "cs_1"
    assert obj["description"].endswith("...<truncated>")
    assert len(obj["description"]) <= PAYLOAD_TRUNCATE + len("...<truncated>")
    assert obj["line_items"] == {"data": [{"quantity": 1}]}


def test_record_action_for_admin_operation(audit, make_user):
    user = make_user()
    entry = audit.record_action(
        event_type="admin_trial_reset",
        source=EventSource.ADMIN,
        status=EventLogStatus.SUCCESS,
        action="reset_trial",
        user=user,
        event_data={"note": "manual"},
    )
    assert entry.source == EventSource.ADMIN
    assert entry.user_email == user.email
    assert entry.event_data == {"note": "manual"}


def test_write_failure_is_buffered_not_raised():
    store = Mock()
    store.append_event_log.side_effect = PersistenceError("db down", operation="append_event_log")
    audit = EventAuditLog(store)
    event = _event()

    assert audit.record(event, _outcome(event)) is None
    assert len(audit.pending) == 1
    assert audit.pending[0].stripe_event_id == "evt_1"
