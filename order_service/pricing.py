"""
pricing.py — Delivery Fees, Verification Codes and Order References

Small, side-effect-free building blocks used by the order assembler:
    • delivery_fee(): tiered fee for a delivery distance
    • issue_verification_code(): staff-facing pickup/delivery code
    • new_order_reference() / payment_reference(): order identity
"""

import math
import random
import string
import time
from typing import NamedTuple, Optional

from . import config
from .config import FeeSchedule, PaymentFlow
from .errors import ValidationFailed
from .models import DeliveryMethod

_REFERENCE_ALPHABET = string.ascii_lowercase + string.digits


def delivery_fee(distance_km: float, schedule: FeeSchedule = config.FEE_SCHEDULE) -> int:
    """
    Calculates the delivery fee for a distance in km.

    The base fee covers everything up to `schedule.base_km` inclusive. Each started
    kilometer beyond it is billed at `schedule.rate_per_km`.

    Args:
        distance_km (float): Non-negative distance from the kitchen.
        schedule (FeeSchedule): Pricing schedule of this deployment.

    Returns:
        int: Fee in whole currency units.

    Raises:
        ValidationFailed: If the distance is negative.
    """
    if distance_km < 0:
        raise ValidationFailed("Delivery distance must not be negative",
                               detail={"deliveryDistance": distance_km})
    if distance_km <= schedule.base_km:
        return schedule.base_fee
    extra_km = math.ceil(distance_km - schedule.base_km)
    return schedule.base_fee + extra_km * schedule.rate_per_km


class VerificationCodes(NamedTuple):
    pickupCode: Optional[str]
    deliveryCode: Optional[str]


def issue_verification_code(method: DeliveryMethod, supplied: Optional[str] = None,
                            prefix: str = config.BRAND_PREFIX) -> VerificationCodes:
    """
    Returns the verification code for an order, in the field matching its delivery method.

    A code supplied by the storefront is used verbatim. Otherwise a code of the form
    `<PREFIX>-<P|D>-<4 digits>` is generated. Codes are for visual matching by staff
    and are not unique.
    """
    if not supplied:
        tag = "P" if method == DeliveryMethod.PICKUP else "D"
        supplied = f"{prefix}-{tag}-{random.randint(1000, 9999)}"

    if method == DeliveryMethod.PICKUP:
        return VerificationCodes(pickupCode=supplied, deliveryCode=None)
    return VerificationCodes(pickupCode=None, deliveryCode=supplied)


def new_order_reference(prefix: str = config.BRAND_PREFIX) -> str:
    """Time component plus random suffix, e.g. ATMOS-1718000000000-k3j9x0a1b."""
    suffix = "".join(random.choices(_REFERENCE_ALPHABET, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def payment_reference(order_reference: str, flow: PaymentFlow) -> str:
    tag = "MANUAL" if flow == PaymentFlow.MANUAL else "PAYSTACK"
    return f"{tag}-{order_reference}"
