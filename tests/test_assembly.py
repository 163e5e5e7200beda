import pytest

from order_service.catalog import CatalogResolver
from order_service.config import PaymentFlow
from order_service.errors import NotFound
from order_service.models import CartItem, DeliveryMethod

from conftest import PICKUP_LITERAL


class CountingReader:
    def __init__(self, reader):
        self.reader = reader
        self.calls = []

    def find_products_by_ids(self, ids):
        self.calls.append(("products", set(ids)))
        return self.reader.find_products_by_ids(ids)

    def find_proteins_by_ids(self, ids):
        self.calls.append(("proteins", set(ids)))
        return self.reader.find_proteins_by_ids(ids)


def test_resolver_prices_line_items(reader):
    items = CatalogResolver(reader).resolve([
        CartItem(product="rice", quantity=2, proteins=["chicken", "beef"]),
        CartItem(product="coke", quantity=1),
    ])

    assert [i.productName for i in items] == ["Jollof Rice", "Coke"]
    assert items[0].price == 4500 + 3500 + 2000
    assert items[0].proteinNames == ["Chicken", "Beef"]
    assert items[1].price == 500
    assert items[1].proteins == []


def test_resolver_reads_catalog_in_bulk(reader):
    counting = CountingReader(reader)
    cart = [CartItem(product=p, quantity=1, proteins=["chicken"]) for p in ["rice", "beans", "rice", "coke"]]

    CatalogResolver(counting).resolve(cart)

    assert counting.calls == [
        ("products", {"rice", "beans", "coke"}),
        ("proteins", {"chicken"}),
    ]


def test_unknown_protein_is_silently_skipped(reader):
    [item] = CatalogResolver(reader).resolve([
        CartItem(product="rice", quantity=1, proteins=["chicken", "unicorn"]),
    ])
    assert item.price == 8000
    assert item.proteins == ["chicken"]
    assert item.proteinNames == ["Chicken"]


def test_unknown_product_aborts_resolution(reader):
    with pytest.raises(NotFound):
        CatalogResolver(reader).resolve([
            CartItem(product="rice", quantity=1),
            CartItem(product="pizza", quantity=1),
        ])


def test_pickup_order_total_and_address(assembler, order_request):
    order = assembler.assemble(
        order_request(deliveryCoordinates={"lat": 8.4, "lng": 4.6}, deliveryDistance=4),
        PaymentFlow.MANUAL,
    )

    assert order.totalAmount == (4500 + 3500) * 2 == 16000
    assert order.deliveryFee == 0
    assert order.address == PICKUP_LITERAL
    assert order.deliveryCoordinates is None and order.deliveryDistance is None
    assert order.pickupCode and order.deliveryCode is None
    assert order.id is None
    assert order.paymentReference == f"MANUAL-{order.orderReference}"


def test_delivery_order_adds_distance_fee(assembler, order_request):
    order = assembler.assemble(
        order_request(items=[{"product": "rice", "quantity": 1}], deliveryMethod="delivery",
                      deliveryDistance=5, deliveryCoordinates={"lat": 8.45, "lng": 4.61}),
        PaymentFlow.GATEWAY,
    )

    assert order.deliveryFee == 400 + 3 * 200 == 1000
    assert order.totalAmount == 4500 + 1000
    assert order.address == "12 Unity Road, Ilorin"
    assert order.deliveryMethod == DeliveryMethod.DELIVERY
    assert order.deliveryCode.startswith("ATMOS-D-") and order.pickupCode is None
    assert order.paymentMethod == "paystack"


def test_delivery_without_distance_has_no_fee(assembler, order_request):
    order = assembler.assemble(order_request(deliveryMethod="delivery"), PaymentFlow.MANUAL)
    assert order.deliveryFee == 0
    assert order.totalAmount == 16000


def test_client_verification_code_is_kept(assembler, order_request):
    order = assembler.assemble(order_request(verificationCode="ATMOS-P-7777"), PaymentFlow.MANUAL)
    assert order.pickupCode == "ATMOS-P-7777"


def test_each_assembly_gets_a_new_reference(assembler, order_request):
    first = assembler.assemble(order_request(), PaymentFlow.MANUAL)
    second = assembler.assemble(order_request(), PaymentFlow.MANUAL)
    assert first.orderReference != second.orderReference
