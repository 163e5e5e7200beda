import re

import pytest

from order_service.config import FeeSchedule, PaymentFlow
from order_service.errors import ValidationFailed
from order_service.models import DeliveryMethod
from order_service.pricing import (delivery_fee, issue_verification_code, new_order_reference,
                                   payment_reference)

ILORIN = FeeSchedule(base_fee=400, base_km=2, rate_per_km=200)
LEGACY = FeeSchedule(base_fee=600, base_km=3, rate_per_km=100)


@pytest.mark.parametrize("distance", [0, 0.1, 1, 1.99, 2])
def test_base_fee_covers_threshold_inclusive(distance):
    assert delivery_fee(distance, ILORIN) == 400


@pytest.mark.parametrize("distance, expected", [
    (2.01, 600),
    (3, 600),
    (3.2, 800),
    (5, 1000),
    (10.5, 2200),
])
def test_extra_distance_billed_per_started_km(distance, expected):
    assert delivery_fee(distance, ILORIN) == expected


def test_fee_is_monotonic_over_a_sweep():
    fees = [delivery_fee(d / 10, ILORIN) for d in range(0, 300)]
    assert fees == sorted(fees)
    assert all((fee - 400) % 200 == 0 for fee in fees)


def test_schedule_is_configuration():
    assert delivery_fee(3, LEGACY) == 600
    assert delivery_fee(3.5, LEGACY) == 700
    assert delivery_fee(3.5, ILORIN) == 800


def test_negative_distance_rejected():
    with pytest.raises(ValidationFailed):
        delivery_fee(-1, ILORIN)


def test_supplied_code_used_verbatim():
    codes = issue_verification_code(DeliveryMethod.PICKUP, "ATMOS-P-0042")
    assert codes.pickupCode == "ATMOS-P-0042"
    assert codes.deliveryCode is None


@pytest.mark.parametrize("method, field, tag", [
    (DeliveryMethod.PICKUP, "pickupCode", "P"),
    (DeliveryMethod.DELIVERY, "deliveryCode", "D"),
])
def test_generated_code_format(method, field, tag):
    codes = issue_verification_code(method, prefix="ATMOS")
    code = getattr(codes, field)
    assert re.fullmatch(rf"ATMOS-{tag}-\d{{4}}", code)
    assert [c for c in codes if c] == [code]


def test_order_references_are_distinct():
    references = {new_order_reference("ATMOS") for _ in range(200)}
    assert len(references) == 200
    assert all(re.fullmatch(r"ATMOS-\d{13}-[a-z0-9]{9}", ref) for ref in references)


def test_payment_reference_follows_flow():
    assert payment_reference("ATMOS-1-abc", PaymentFlow.MANUAL) == "MANUAL-ATMOS-1-abc"
    assert payment_reference("ATMOS-1-abc", PaymentFlow.GATEWAY) == "PAYSTACK-ATMOS-1-abc"
