"""
Shared test fixtures: in-memory store with a seeded catalog, fake collaborators,
and an API client wired to them.
"""

import os

os.environ.setdefault("LOG_FILE", "")

import pytest
from sqlalchemy.pool import StaticPool

from order_service.assembler import OrderAssembler
from order_service.catalog import CatalogResolver
from order_service.config import FeeSchedule, PaymentFlow
from order_service.errors import GatewayFailure
from order_service.models import GatewaySession, NewOrderRequest
from order_service.store import (CatalogReader, OrderStore, ProductRow, ProteinRow,
                                 create_session_factory)
from order_service.workflow import PaymentFlowCoordinator

PICKUP_LITERAL = "PICKUP @ ATMOS KITCHEN"
WEBHOOK_SECRET = "sk_test_secret"
ADMIN_KEY = "test-admin-key"


class RecordingNotifier:
    """Stands in for NotificationDispatcher and remembers every dispatch."""

    def __init__(self):
        self.sent = []

    def dispatch(self, kind, order):
        self.sent.append((kind, order))
        return True

    def kinds(self):
        return [kind for kind, _ in self.sent]


class FakeGateway:
    """Stands in for PaystackClient."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sessions = []

    def open_session(self, email, amount_minor_units, reference, metadata):
        if self.fail:
            raise GatewayFailure("Failed to initialize payment: upstream down")
        self.sessions.append({"email": email, "amount": amount_minor_units,
                              "reference": reference, "metadata": metadata})
        return GatewaySession(redirectUrl=f"https://checkout.test/{reference}", reference=reference)


@pytest.fixture
def session_factory():
    factory = create_session_factory("sqlite://", poolclass=StaticPool)
    with factory() as session, session.begin():
        session.add_all([
            ProductRow(id="rice", name="Jollof Rice", price=4500),
            ProductRow(id="beans", name="Beans & Plantain", price=3000),
            ProductRow(id="coke", name="Coke", price=500),
            ProteinRow(id="chicken", name="Chicken", price=3500),
            ProteinRow(id="beef", name="Beef", price=2000),
        ])
    return factory


@pytest.fixture
def store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def reader(session_factory):
    return CatalogReader(session_factory)


@pytest.fixture
def assembler(reader):
    return OrderAssembler(CatalogResolver(reader), fee_schedule=FeeSchedule(400, 2, 200),
                          brand_prefix="ATMOS", pickup_location=PICKUP_LITERAL)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manual_coordinator(store, assembler, notifier):
    return PaymentFlowCoordinator(store, assembler, notifier, flow=PaymentFlow.MANUAL)


@pytest.fixture
def gateway_coordinator(store, assembler, notifier, gateway):
    return PaymentFlowCoordinator(store, assembler, notifier, gateway=gateway, flow=PaymentFlow.GATEWAY)


def make_request(**overrides):
    payload = {
        "items": [{"product": "rice", "quantity": 2, "proteins": ["chicken"]}],
        "customerName": "Ada Obi",
        "email": "ada@atmosfood.ng",
        "phoneNumber": "08012345678",
        "address": "12 Unity Road, Ilorin",
        "deliveryMethod": "pickup",
    }
    payload.update(overrides)
    return NewOrderRequest.model_validate(payload)


@pytest.fixture
def order_request():
    return make_request
