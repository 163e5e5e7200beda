"""
workflow.py — Payment Flow Coordination for Orders

This module contains the order placement and payment settlement logic.
It owns every payment status transition of an order.

Workflow Overview:
    Manual flow (PAYMENT_FLOW=manual):
        1. Assemble and store the order in pending/pending
        2. Return bank transfer instructions, notify staff (awaiting payment)
        3. Staff verify the receipt → payment success, status preparing
    Gateway flow (PAYMENT_FLOW=gateway):
        1. Assemble the order, store nothing
        2. Open a Paystack session carrying the order as metadata
        3. On a confirmed charge webhook, materialize the order in one transaction

Every payment status write is a compare-and-swap on the status observed before,
so duplicate webhooks and racing staff calls cannot both win a transition.
"""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError

from . import config
from .assembler import OrderAssembler
from .clients import PaystackClient
from .config import PaymentFlow
from .errors import AlreadyProcessed, DuplicateReference, GatewayFailure, NotFound
from .models import (GatewaySessionOpened, ManualOrderPlaced, NewOrderRequest, Order,
                     OrderStatus, PaymentDetails, PaymentInstructions, PaymentStatus,
                     PlacementResult)
from .notifications import NotificationDispatcher, NotificationKind
from .store import OrderStore

log = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


def _parse_time(value) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            log.warning(f"Unparseable gateway timestamp {value!r}, using current time.")
    return _now()


def payment_instructions(total_amount: int) -> PaymentInstructions:
    return PaymentInstructions(
        bankName=config.BANK_NAME,
        accountNumber=config.BANK_ACCOUNT_NUMBER,
        accountName=config.BANK_ACCOUNT_NAME,
        whatsappNumber=config.WHATSAPP_NUMBER,
        message=(f"Please pay ₦{total_amount:,} to the above account and share receipt "
                 f"screenshot on WhatsApp for verification."),
    )


def decode_order_metadata(metadata) -> Optional[Order]:
    """
    Rebuilds the order embedded in a gateway session.

    Gateways echo metadata either as an object or as a JSON string. Returns None if
    no usable order is present.
    """
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            return None
    if not isinstance(metadata, dict) or "order" not in metadata:
        return None
    try:
        return Order.model_validate(metadata["order"])
    except ValidationError as e:
        log.error(f"Gateway metadata does not contain a valid order: {e}")
        return None


class PaymentFlowCoordinator:
    """
    Places orders and applies payment events.

    Args:
        store (OrderStore): Order persistence.
        assembler (OrderAssembler): Builds priced orders from requests.
        notifier (NotificationDispatcher): Fire-and-forget operator notifications.
        gateway (PaystackClient | None): Required for the gateway flow only.
        flow (PaymentFlow): Settlement variant of this deployment.
    """

    def __init__(self, store: OrderStore, assembler: OrderAssembler,
                 notifier: NotificationDispatcher, gateway: Optional[PaystackClient] = None,
                 flow: PaymentFlow = config.PAYMENT_FLOW):
        self.store = store
        self.assembler = assembler
        self.notifier = notifier
        self.gateway = gateway
        self.flow = flow

    # --- Placement ---

    def place_order(self, request: NewOrderRequest) -> PlacementResult:
        """
        Places a new order using the deployment's payment flow.

        Returns:
            ManualOrderPlaced: Manual flow, order stored in pending/pending.
            GatewaySessionOpened: Gateway flow, nothing stored yet.

        Raises:
            NotFound: If a cart item references an unknown product.
            DuplicateReference: If the generated reference collides in the store.
            GatewayFailure: If the gateway session cannot be opened.
        """
        order = self.assembler.assemble(request, self.flow)
        if self.flow == PaymentFlow.MANUAL:
            return self._place_manual(order)
        return self._open_gateway_session(order)

    def _place_manual(self, order: Order) -> ManualOrderPlaced:
        order_id = self.store.insert(order)
        order = order.model_copy(update={"id": order_id})
        log.info(f"[Order: {order.orderReference}] Stored (id {order_id}), awaiting manual payment.")

        self.notifier.dispatch(NotificationKind.AWAITING_PAYMENT, order)
        return ManualOrderPlaced(order=order, paymentInstructions=payment_instructions(order.totalAmount))

    def _open_gateway_session(self, order: Order) -> GatewaySessionOpened:
        if self.gateway is None:
            raise GatewayFailure("Payment gateway is not configured")

        session = self.gateway.open_session(
            email=order.email,
            amount_minor_units=order.totalAmount * 100,
            reference=order.orderReference,
            metadata={"order": order.model_dump(mode="json")},
        )
        log.info(f"[Order: {order.orderReference}] Gateway session opened, order deferred until payment.")
        return GatewaySessionOpened(orderReference=order.orderReference,
                                    authorizationUrl=session.redirectUrl,
                                    reference=session.reference)

    # --- Manual verification ---

    def verify_payment(self, order_id: str, receipt_image: Optional[str] = None) -> Order:
        """
        Confirms a manual transfer: payment success, status preparing.

        Raises:
            NotFound: If the order does not exist.
            AlreadyProcessed: If the payment is already confirmed (or was confirmed concurrently).
        """
        order = self.store.find_by_id(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        log_prefix = f"[Order: {order.orderReference}]"
        if order.paymentStatus == PaymentStatus.SUCCESS:
            raise AlreadyProcessed("Payment already verified")

        swapped = self.store.conditional_update_payment_status(
            order.id, order.paymentStatus, PaymentStatus.SUCCESS,
            status=OrderStatus.PREPARING,
            paid_at=_now(),
            receipt_image=receipt_image,
        )
        if not swapped:
            log.warning(f"{log_prefix} Payment status changed concurrently, verification rejected.")
            raise AlreadyProcessed("Payment already verified")

        order = self.store.find_by_id(order.id)
        log.info(f"{log_prefix} Manual payment verified.")
        self.notifier.dispatch(NotificationKind.PAYMENT_CONFIRMED, order)
        return order

    # --- Gateway events ---

    def confirm_charge(self, data: dict) -> Optional[Order]:
        """
        Applies a `charge.success` event.

        An existing order moves to payment success. Without one, the order embedded in
        the metadata is materialized in a single transaction. Duplicate deliveries are
        no-ops and never notify twice.

        Returns:
            Order | None: The order the event settled, None if nothing changed.

        Raises:
            Exception: Any fault of the materializing transaction (nothing was committed).
        """
        reference = data.get("reference")
        if not reference:
            log.warning("charge.success without reference ignored.")
            return None

        paid_at = _parse_time(data.get("paid_at"))
        details = PaymentDetails(
            method="paystack",
            amount=data.get("amount"),
            customer=data.get("customer"),
            paidAt=paid_at,
        )

        existing = self.store.find_by_gateway_reference_or_id(reference)
        if existing is not None:
            return self._settle_existing(existing, reference, paid_at, details)

        order = decode_order_metadata(data.get("metadata"))
        if order is None:
            log.error(f"[Order: {reference}] Payment confirmed but no order found or embedded. Manual check required!")
            return None
        return self._materialize(order, reference, paid_at, details)

    def _settle_existing(self, order: Order, reference: str, paid_at: datetime,
                         details: PaymentDetails) -> Optional[Order]:
        log_prefix = f"[Order: {order.orderReference}]"
        if order.paymentStatus == PaymentStatus.SUCCESS:
            log.info(f"{log_prefix} Duplicate charge.success for {reference}, already paid.")
            return None

        swapped = self.store.conditional_update_payment_status(
            order.id, order.paymentStatus, PaymentStatus.SUCCESS,
            paid_at=paid_at,
            gateway_reference=reference,
            payment_details=details,
        )
        if not swapped:
            log.info(f"{log_prefix} charge.success for {reference} lost the race, already settled.")
            return None

        order = self.store.find_by_id(order.id)
        log.info(f"{log_prefix} Marked as PAID via gateway ({reference}).")
        self.notifier.dispatch(NotificationKind.PAYMENT_CONFIRMED, order)
        return order

    def _materialize(self, order: Order, reference: str, paid_at: datetime,
                     details: PaymentDetails) -> Optional[Order]:
        log_prefix = f"[Order: {order.orderReference}]"
        if order.orderReference != reference:
            log.warning(f"{log_prefix} Gateway reference {reference} differs from the embedded order reference.")
        if details.amount is not None and details.amount != order.totalAmount * 100:
            log.warning(f"{log_prefix} Paid amount {details.amount} differs from order total "
                        f"{order.totalAmount * 100} (minor units).")

        order = order.model_copy(update={
            "id": None,
            "status": OrderStatus.PREPARING,
            "paymentStatus": PaymentStatus.SUCCESS,
            "gatewayReference": reference,
            "paidAt": paid_at,
            "paymentDetails": details,
        })
        try:
            order_id = self.store.transactional_insert(order)
        except DuplicateReference:
            log.info(f"{log_prefix} Duplicate charge.success for {reference}, order already materialized.")
            return None

        order = order.model_copy(update={"id": order_id})
        log.info(f"{log_prefix} Materialized from gateway payment (id {order_id}).")
        self.notifier.dispatch(NotificationKind.NEW_ORDER, order)
        return order

    def fail_charge(self, data: dict) -> Optional[Order]:
        """
        Applies a `charge.failed` event. Unknown orders are dropped, paid orders are left alone.

        Returns:
            Order | None: The order marked as failed, None if nothing changed.
        """
        reference = data.get("reference")
        order = self.store.find_by_gateway_reference_or_id(reference) if reference else None
        if order is None:
            log.info(f"[Order: {reference}] charge.failed for an order that was never materialized, dropped.")
            return None

        log_prefix = f"[Order: {order.orderReference}]"
        if order.paymentStatus != PaymentStatus.PENDING:
            log.info(f"{log_prefix} charge.failed ignored, payment already {order.paymentStatus.value}.")
            return None

        gateway_response = data.get("gateway_response")
        if isinstance(gateway_response, dict):
            reason = gateway_response.get("message")
        else:
            reason = gateway_response
        details = PaymentDetails(
            method="paystack",
            amount=data.get("amount"),
            customer=data.get("customer"),
            failedAt=_parse_time(data.get("failed_at")),
            reason=reason or "Payment failed",
        )

        swapped = self.store.conditional_update_payment_status(
            order.id, PaymentStatus.PENDING, PaymentStatus.FAILED,
            gateway_reference=reference,
            payment_details=details,
        )
        if not swapped:
            log.info(f"{log_prefix} charge.failed lost the race, payment status already changed.")
            return None

        order = self.store.find_by_id(order.id)
        log.warning(f"{log_prefix} Marked as PAYMENT_FAILED: {details.reason}")
        self.notifier.dispatch(NotificationKind.PAYMENT_FAILED, order)
        return order

    # --- Staff administration ---

    def get_order(self, order_id: str) -> Order:
        order = self.store.find_by_id(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def list_orders(self, include_archived: bool = False, limit: Optional[int] = None) -> List[Order]:
        return self.store.list_orders(include_archived=include_archived, limit=limit)

    def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        """Sets the fulfillment status. Any status may follow any other; payment status is untouched."""
        order = self.store.update_status(order_id, status)
        log.info(f"[Order: {order.orderReference}] Status set to {status.value} by staff.")
        return order

    def set_archived(self, order_id: str, archived: bool) -> Order:
        order = self.store.set_archived(order_id, archived)
        log.info(f"[Order: {order.orderReference}] {'Archived' if archived else 'Restored'} by staff.")
        return order

    def archive_active_orders(self) -> int:
        count = self.store.archive_active()
        log.info(f"{count} active order(s) moved to the archive.")
        return count
