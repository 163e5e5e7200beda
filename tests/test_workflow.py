import pytest

from order_service.errors import AlreadyProcessed, GatewayFailure, NotFound
from order_service.models import (GatewaySessionOpened, ManualOrderPlaced, OrderStatus,
                                  PaymentStatus)
from order_service.notifications import NotificationKind
from order_service.workflow import decode_order_metadata

from conftest import FakeGateway


# --- Manual flow ---

def test_manual_order_is_stored_pending(manual_coordinator, store, notifier, order_request):
    result = manual_coordinator.place_order(order_request())

    assert isinstance(result, ManualOrderPlaced)
    stored = store.find_by_id(result.order.id)
    assert stored.status == OrderStatus.PENDING
    assert stored.paymentStatus == PaymentStatus.PENDING
    assert stored.paymentMethod == "manual"
    assert "₦16,000" in result.paymentInstructions.message
    assert notifier.kinds() == [NotificationKind.AWAITING_PAYMENT]


def test_verify_payment_once_then_already_processed(manual_coordinator, store, notifier, order_request):
    placed = manual_coordinator.place_order(order_request())

    verified = manual_coordinator.verify_payment(placed.order.id, "https://img.test/receipt.png")

    assert verified.paymentStatus == PaymentStatus.SUCCESS
    assert verified.status == OrderStatus.PREPARING
    assert verified.paidAt is not None
    assert verified.receiptImage == "https://img.test/receipt.png"
    assert verified.orderReference == placed.order.orderReference

    with pytest.raises(AlreadyProcessed):
        manual_coordinator.verify_payment(placed.order.id, "https://img.test/other.png")

    again = store.find_by_id(placed.order.id)
    assert again.receiptImage == "https://img.test/receipt.png"
    assert again.paidAt == verified.paidAt
    assert notifier.kinds() == [NotificationKind.AWAITING_PAYMENT, NotificationKind.PAYMENT_CONFIRMED]


def test_verify_unknown_order(manual_coordinator):
    with pytest.raises(NotFound):
        manual_coordinator.verify_payment("missing")


def test_missing_product_leaves_no_trace(manual_coordinator, store, notifier, order_request):
    with pytest.raises(NotFound):
        manual_coordinator.place_order(order_request(items=[
            {"product": "rice", "quantity": 1},
            {"product": "ghost", "quantity": 1},
        ]))

    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []


def test_status_edits_never_touch_payment_or_reference(manual_coordinator, order_request):
    placed = manual_coordinator.place_order(order_request())

    for status in [OrderStatus.DELIVERED, OrderStatus.PENDING, OrderStatus.CANCELLED, OrderStatus.PREPARING]:
        order = manual_coordinator.update_order_status(placed.order.id, status)
        assert order.status == status
        assert order.paymentStatus == PaymentStatus.PENDING
        assert order.orderReference == placed.order.orderReference


def test_archive_toggle(manual_coordinator, order_request):
    placed = manual_coordinator.place_order(order_request())

    assert manual_coordinator.set_archived(placed.order.id, True).isArchived
    assert manual_coordinator.list_orders() == []
    assert manual_coordinator.set_archived(placed.order.id, False).isArchived is False
    assert manual_coordinator.archive_active_orders() == 1


# --- Gateway flow ---

def test_gateway_flow_defers_persistence(gateway_coordinator, gateway, store, notifier, order_request):
    result = gateway_coordinator.place_order(order_request())

    assert isinstance(result, GatewaySessionOpened)
    assert result.authorizationUrl == f"https://checkout.test/{result.orderReference}"
    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []

    [session] = gateway.sessions
    assert session["amount"] == 16000 * 100
    assert session["reference"] == result.orderReference
    assert session["metadata"]["order"]["orderReference"] == result.orderReference


def test_gateway_failure_surfaces(store, assembler, notifier, order_request):
    from order_service.config import PaymentFlow
    from order_service.workflow import PaymentFlowCoordinator

    coordinator = PaymentFlowCoordinator(store, assembler, notifier, gateway=FakeGateway(fail=True),
                                         flow=PaymentFlow.GATEWAY)
    with pytest.raises(GatewayFailure):
        coordinator.place_order(order_request())
    assert store.list_orders(include_archived=True) == []


def _charge_data(gateway, **overrides):
    session = gateway.sessions[-1]
    data = {
        "reference": session["reference"],
        "amount": session["amount"],
        "customer": {"email": session["email"]},
        "paid_at": "2026-10-19T12:30:00.000Z",
        "metadata": session["metadata"],
    }
    data.update(overrides)
    return data


def test_confirmed_charge_materializes_order_once(gateway_coordinator, gateway, store, notifier, order_request):
    gateway_coordinator.place_order(order_request())
    data = _charge_data(gateway)

    order = gateway_coordinator.confirm_charge(data)
    duplicate = gateway_coordinator.confirm_charge(data)

    assert duplicate is None
    assert len(store.list_orders(include_archived=True)) == 1
    stored = store.find_by_reference(data["reference"])
    assert stored.id == order.id
    assert stored.paymentStatus == PaymentStatus.SUCCESS
    assert stored.status == OrderStatus.PREPARING
    assert stored.gatewayReference == data["reference"]
    assert stored.paymentDetails.amount == 1600000
    assert len(stored.items) == 1 and stored.totalAmount == 16000
    assert notifier.kinds() == [NotificationKind.NEW_ORDER]


def test_metadata_as_json_string(gateway_coordinator, gateway, store, order_request):
    import json

    gateway_coordinator.place_order(order_request())
    data = _charge_data(gateway)
    data["metadata"] = json.dumps(data["metadata"])

    assert gateway_coordinator.confirm_charge(data) is not None
    assert store.find_by_reference(data["reference"]) is not None


def test_confirmed_charge_without_metadata_changes_nothing(gateway_coordinator, store, notifier):
    assert gateway_coordinator.confirm_charge({"reference": "ATMOS-0-unknown", "amount": 100}) is None
    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []


def test_confirmed_charge_settles_existing_order_by_id(manual_coordinator, store, notifier, order_request):
    placed = manual_coordinator.place_order(order_request())

    order = manual_coordinator.confirm_charge({"reference": placed.order.id, "amount": 1600000,
                                               "paid_at": "2026-10-19T12:30:00Z"})

    assert order.paymentStatus == PaymentStatus.SUCCESS
    assert order.gatewayReference == placed.order.id
    assert manual_coordinator.confirm_charge({"reference": placed.order.id}) is None
    assert notifier.kinds() == [NotificationKind.AWAITING_PAYMENT, NotificationKind.PAYMENT_CONFIRMED]

    with pytest.raises(AlreadyProcessed):
        manual_coordinator.verify_payment(placed.order.id)


def test_failed_charge_marks_pending_order(manual_coordinator, store, notifier, order_request):
    placed = manual_coordinator.place_order(order_request())

    order = manual_coordinator.fail_charge({"reference": placed.order.id, "amount": 1600000,
                                            "gateway_response": {"message": "Insufficient funds"}})

    assert order.paymentStatus == PaymentStatus.FAILED
    assert order.paymentDetails.reason == "Insufficient funds"
    assert order.paymentDetails.failedAt is not None
    assert notifier.kinds()[-1] == NotificationKind.PAYMENT_FAILED

    # a retried payment may still succeed
    assert manual_coordinator.confirm_charge({"reference": placed.order.id}).paymentStatus == PaymentStatus.SUCCESS


def test_failed_charge_never_downgrades_success(manual_coordinator, store, notifier, order_request):
    placed = manual_coordinator.place_order(order_request())
    manual_coordinator.verify_payment(placed.order.id)

    assert manual_coordinator.fail_charge({"reference": placed.order.id}) is None
    assert store.find_by_id(placed.order.id).paymentStatus == PaymentStatus.SUCCESS
    assert NotificationKind.PAYMENT_FAILED not in notifier.kinds()


def test_failed_charge_for_unknown_order_is_dropped(gateway_coordinator, store, notifier):
    assert gateway_coordinator.fail_charge({"reference": "ATMOS-0-never"}) is None
    assert store.list_orders(include_archived=True) == []
    assert notifier.sent == []


def test_decode_order_metadata_rejects_garbage():
    assert decode_order_metadata(None) is None
    assert decode_order_metadata("not json") is None
    assert decode_order_metadata({"cart": []}) is None
    assert decode_order_metadata({"order": {"orderReference": "x"}}) is None
