"""
assembler.py — Order Assembler

Composes catalog resolution, delivery pricing and verification codes into a
priced, referenced order that has not been stored yet.
"""

import logging

from . import config
from .catalog import CatalogResolver
from .config import FeeSchedule, PaymentFlow
from .models import DeliveryMethod, NewOrderRequest, Order
from .pricing import (delivery_fee, issue_verification_code, new_order_reference,
                      payment_reference)

log = logging.getLogger(__name__)


class OrderAssembler:
    """
    Builds order aggregates from validated storefront requests.

    Args:
        resolver (CatalogResolver): Resolves cart items to line items.
        fee_schedule (FeeSchedule): Delivery pricing of this deployment.
        brand_prefix (str): Tag used in references and verification codes.
        pickup_location (str): Address literal written on every pickup order.
    """

    def __init__(self, resolver: CatalogResolver, fee_schedule: FeeSchedule = config.FEE_SCHEDULE,
                 brand_prefix: str = config.BRAND_PREFIX, pickup_location: str = config.PICKUP_LOCATION):
        self.resolver = resolver
        self.fee_schedule = fee_schedule
        self.brand_prefix = brand_prefix
        self.pickup_location = pickup_location

    def assemble(self, request: NewOrderRequest, flow: PaymentFlow) -> Order:
        """
        Prices the cart and assigns the order its identity.

        The order reference is generated here, once. Pickup orders get the pickup
        location as address whatever the client sent, and carry no coordinates or
        distance.

        Raises:
            NotFound: If a cart item references an unknown product.
        """
        items = self.resolver.resolve(request.items)
        subtotal = sum(item.subtotal for item in items)

        is_pickup = request.deliveryMethod == DeliveryMethod.PICKUP
        fee = 0
        if not is_pickup and request.deliveryDistance is not None:
            fee = delivery_fee(request.deliveryDistance, self.fee_schedule)

        codes = issue_verification_code(request.deliveryMethod, request.verificationCode,
                                        prefix=self.brand_prefix)
        reference = new_order_reference(self.brand_prefix)

        log.info(f"[Order: {reference}] Assembled {len(items)} item(s): subtotal={subtotal}, "
                 f"deliveryFee={fee}, method={request.deliveryMethod.value}")

        return Order(
            orderReference=reference,
            paymentReference=payment_reference(reference, flow),
            paymentMethod="manual" if flow == PaymentFlow.MANUAL else "paystack",
            items=items,
            deliveryFee=fee,
            totalAmount=subtotal + fee,
            customerName=request.customerName,
            email=request.email,
            phoneNumber=request.phoneNumber,
            address=self.pickup_location if is_pickup else request.address,
            deliveryMethod=request.deliveryMethod,
            deliveryCoordinates=None if is_pickup else request.deliveryCoordinates,
            deliveryDistance=None if is_pickup else request.deliveryDistance,
            pickupCode=codes.pickupCode,
            deliveryCode=codes.deliveryCode,
        )
