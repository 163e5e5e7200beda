import json

import pytest

from order_service.errors import TransactionAborted, Unauthorized
from order_service.notifications import NotificationKind
from order_service.webhooks import ACKNOWLEDGED, WebhookIngestionGuard, sign

from conftest import WEBHOOK_SECRET


@pytest.fixture
def guard(gateway_coordinator):
    return WebhookIngestionGuard(gateway_coordinator, secret_key=WEBHOOK_SECRET)


def charge_event(gateway, event="charge.success", **data_overrides):
    session = gateway.sessions[-1]
    data = {
        "reference": session["reference"],
        "amount": session["amount"],
        "customer": {"email": session["email"]},
        "paid_at": "2026-10-19T12:30:00Z",
        "metadata": session["metadata"],
    }
    data.update(data_overrides)
    return json.dumps({"event": event, "data": data}).encode()


def test_invalid_signature_changes_nothing(guard, gateway_coordinator, gateway, store, notifier, order_request):
    gateway_coordinator.place_order(order_request())
    body = charge_event(gateway)

    with pytest.raises(Unauthorized):
        guard.handle(body, sign(body, "wrong-secret"))
    with pytest.raises(Unauthorized):
        guard.handle(body, None)

    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []


def test_signature_covers_raw_body(guard, gateway_coordinator, gateway, order_request):
    gateway_coordinator.place_order(order_request())
    body = charge_event(gateway)
    tampered = body.replace(b"charge.success", b"charge.failed")

    with pytest.raises(Unauthorized):
        guard.handle(tampered, sign(body, WEBHOOK_SECRET))


def test_unconfigured_secret_rejects_everything(gateway_coordinator):
    guard = WebhookIngestionGuard(gateway_coordinator, secret_key="")
    body = b'{"event": "charge.success", "data": {}}'

    with pytest.raises(Unauthorized):
        guard.handle(body, sign(body, ""))


def test_duplicate_delivery_creates_one_order_and_one_notification(guard, gateway_coordinator, gateway,
                                                                   store, notifier, order_request):
    gateway_coordinator.place_order(order_request())
    body = charge_event(gateway)
    signature = sign(body, WEBHOOK_SECRET)

    assert guard.handle(body, signature) == ACKNOWLEDGED
    assert guard.handle(body, signature) == ACKNOWLEDGED

    assert len(store.list_orders(include_archived=True)) == 1
    assert notifier.kinds() == [NotificationKind.NEW_ORDER]


def test_transfer_and_unknown_events_are_acknowledged(guard, store, notifier):
    for event in ["transfer.success", "transfer.failed", "subscription.create"]:
        body = json.dumps({"event": event, "data": {"reference": "TRF_1", "amount": 5000,
                                                    "recipient": {"name": "Rider"}}}).encode()
        assert guard.handle(body, sign(body, WEBHOOK_SECRET)) == ACKNOWLEDGED

    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []


def test_malformed_payload_is_acknowledged(guard):
    body = b"{not json"
    assert guard.handle(body, sign(body, WEBHOOK_SECRET)) == ACKNOWLEDGED


def test_internal_errors_are_swallowed(gateway_coordinator, monkeypatch):
    def explode(data):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(gateway_coordinator, "fail_charge", explode)
    guard = WebhookIngestionGuard(gateway_coordinator, secret_key=WEBHOOK_SECRET)
    body = json.dumps({"event": "charge.failed", "data": {"reference": "x"}}).encode()

    assert guard.handle(body, sign(body, WEBHOOK_SECRET)) == ACKNOWLEDGED


def test_aborted_materialization_propagates(guard, gateway_coordinator, gateway, store, notifier,
                                            order_request, monkeypatch):
    gateway_coordinator.place_order(order_request())
    body = charge_event(gateway)

    def abort(order):
        raise TransactionAborted("connection reset mid-transaction")

    monkeypatch.setattr(store, "transactional_insert", abort)

    with pytest.raises(TransactionAborted):
        guard.handle(body, sign(body, WEBHOOK_SECRET))
    assert notifier.sent == []

    monkeypatch.undo()
    assert guard.handle(body, sign(body, WEBHOOK_SECRET)) == ACKNOWLEDGED
    assert len(store.list_orders(include_archived=True)) == 1


def test_non_database_fault_while_materializing_propagates(guard, gateway_coordinator, gateway, store,
                                                           notifier, order_request):
    gateway_coordinator.place_order(order_request())
    gateway.sessions[-1]["metadata"]["order"]["items"][0]["quantity"] = 10 ** 20
    body = charge_event(gateway)

    with pytest.raises(TransactionAborted):
        guard.handle(body, sign(body, WEBHOOK_SECRET))

    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []
