"""
store.py — Order Store and Catalog Reader (SQLAlchemy)

This module owns every database access of the service.

Tables:
    - products / proteins / product_proteins: catalog, written by staff and the seed script
    - orders: order header, unique on order_reference
    - order_items: one row per line item, written together with its header

Concurrency:
    Payment status changes go through `conditional_update_payment_status()`, a single
    `UPDATE ... WHERE payment_status = :expected`. Two concurrent writers can never both
    win the same transition. The unique index on `order_reference` is what stops a
    duplicate webhook replay from creating a second order.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import (JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String,
                        Table, create_engine, or_, select, update)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import (DeclarativeBase, Mapped, mapped_column, relationship,
                            selectinload, sessionmaker)

from .errors import DuplicateReference, NotFound, TransactionAborted, ValidationFailed
from .models import (CatalogEntry, Coordinates, LineItem, NewProductRequest, Order, OrderStatus,
                     PaymentDetails, PaymentStatus, Product, ProductCategory, Protein)

log = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


product_proteins = Table(
    "product_proteins",
    Base.metadata,
    Column("product_id", ForeignKey("products.id"), primary_key=True),
    Column("protein_id", ForeignKey("proteins.id"), primary_key=True),
)


class ProteinRow(Base):
    __tablename__ = "proteins"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(String(1000), default="")
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(20), default=ProductCategory.GRAINS.value)
    image: Mapped[str] = mapped_column(String(1000), default="")
    rating: Mapped[float] = mapped_column(Float, default=0)
    calories: Mapped[int] = mapped_column(Integer, default=0)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    # protein add-ons offered with this product
    proteins: Mapped[List[ProteinRow]] = relationship(secondary=product_proteins, order_by=ProteinRow.name)


class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    order_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(80), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)

    delivery_fee: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    customer_name: Mapped[str] = mapped_column(String(200), index=True)
    email: Mapped[str] = mapped_column(String(200), index=True)
    phone_number: Mapped[str] = mapped_column(String(40))
    address: Mapped[str] = mapped_column(String(500))
    delivery_method: Mapped[str] = mapped_column(String(20))
    delivery_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_distance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pickup_code: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    delivery_code: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(80), nullable=True, index=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    receipt_image: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow,
                                                 onupdate=_utcnow)

    items: Mapped[List["OrderItemRow"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItemRow.position"
    )


class OrderItemRow(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(32), nullable=False)
    product_name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    # [{"id": ..., "name": ...}] as resolved at order time
    proteins: Mapped[list] = mapped_column(JSON, default=list)

    order: Mapped[OrderRow] = relationship(back_populates="items")


def create_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    """
    Creates the engine, makes sure the schema exists and returns a session factory.

    Args:
        database_url (str): SQLAlchemy database URL.
        **engine_kwargs: Passed through to `create_engine` (e.g. poolclass for tests).

    Returns:
        sessionmaker: Factory producing sessions bound to the engine.
    """
    if database_url.startswith("sqlite"):
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(database_url, **engine_kwargs)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


# --- Mapping ---

def _to_domain(row: OrderRow) -> Order:
    coordinates = None
    if row.delivery_lat is not None and row.delivery_lng is not None:
        coordinates = Coordinates(lat=row.delivery_lat, lng=row.delivery_lng)
    return Order(
        id=row.id,
        orderReference=row.order_reference,
        paymentReference=row.payment_reference,
        paymentMethod=row.payment_method,
        items=[
            LineItem(
                product=item.product_id,
                productName=item.product_name,
                quantity=item.quantity,
                price=item.price,
                proteins=[p["id"] for p in item.proteins or []],
                proteinNames=[p["name"] for p in item.proteins or []],
            )
            for item in row.items
        ],
        deliveryFee=row.delivery_fee,
        totalAmount=row.total_amount,
        customerName=row.customer_name,
        email=row.email,
        phoneNumber=row.phone_number,
        address=row.address,
        deliveryMethod=row.delivery_method,
        deliveryCoordinates=coordinates,
        deliveryDistance=row.delivery_distance,
        pickupCode=row.pickup_code,
        deliveryCode=row.delivery_code,
        status=row.status,
        paymentStatus=row.payment_status,
        gatewayReference=row.gateway_reference,
        paymentDetails=PaymentDetails.model_validate(row.payment_details) if row.payment_details else None,
        paidAt=row.paid_at,
        receiptImage=row.receipt_image,
        isArchived=row.is_archived,
        createdAt=row.created_at,
        updatedAt=row.updated_at,
    )


def _to_row(order: Order) -> OrderRow:
    row = OrderRow(
        order_reference=order.orderReference,
        payment_reference=order.paymentReference,
        payment_method=order.paymentMethod,
        delivery_fee=order.deliveryFee,
        total_amount=order.totalAmount,
        customer_name=order.customerName,
        email=order.email,
        phone_number=order.phoneNumber,
        address=order.address,
        delivery_method=order.deliveryMethod.value,
        delivery_lat=order.deliveryCoordinates.lat if order.deliveryCoordinates else None,
        delivery_lng=order.deliveryCoordinates.lng if order.deliveryCoordinates else None,
        delivery_distance=order.deliveryDistance,
        pickup_code=order.pickupCode,
        delivery_code=order.deliveryCode,
        status=order.status.value,
        payment_status=order.paymentStatus.value,
        gateway_reference=order.gatewayReference,
        payment_details=order.paymentDetails.model_dump(mode="json") if order.paymentDetails else None,
        paid_at=order.paidAt,
        receipt_image=order.receiptImage,
        is_archived=order.isArchived,
    )
    if order.id:
        row.id = order.id
    row.items = [
        OrderItemRow(
            position=position,
            product_id=item.product,
            product_name=item.productName,
            quantity=item.quantity,
            price=item.price,
            proteins=[{"id": pid, "name": name} for pid, name in zip(item.proteins, item.proteinNames)],
        )
        for position, item in enumerate(order.items)
    ]
    return row


# --- Order Store ---

class OrderStore:
    """
    Durable order persistence.

    Orders are never deleted. Staff archive them instead.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def insert(self, order: Order) -> str:
        """
        Persists a new order and returns its id.

        Header and line items live in separate tables, so every insert goes through
        the same transactional write.

        Raises:
            DuplicateReference: If an order with the same reference already exists.
        """
        return self.transactional_insert(order)

    def transactional_insert(self, order: Order) -> str:
        """
        Writes the order header and all its line items in one transaction.

        Either everything is committed or nothing is. On any fault the transaction is
        rolled back and the error re-raised.

        Returns:
            str: The internal id of the new order.

        Raises:
            DuplicateReference: On a unique violation of the order reference.
            TransactionAborted: On any other fault, database or driver (e.g. a value
                the column type cannot hold).
        """
        try:
            row = _to_row(order)
            with self.session_factory() as session, session.begin():
                session.add(row)
                session.flush()
                order_id = row.id
        except IntegrityError as e:
            log.warning(f"[Order: {order.orderReference}] Insert rejected, reference already exists.")
            raise DuplicateReference(f"Duplicate order reference {order.orderReference}") from e
        except SQLAlchemyError as e:
            log.error(f"[Order: {order.orderReference}] Transaction aborted, nothing committed: {e}")
            raise TransactionAborted(str(e)) from e
        except Exception as e:
            log.error(f"[Order: {order.orderReference}] Transaction aborted by {type(e).__name__}, "
                      f"nothing committed: {e}")
            raise TransactionAborted(f"{type(e).__name__}: {e}") from e
        return order_id

    def _find_one(self, *criteria) -> Optional[Order]:
        with self.session_factory() as session:
            row = session.scalars(
                select(OrderRow).options(selectinload(OrderRow.items)).where(*criteria)
            ).first()
            return _to_domain(row) if row else None

    def find_by_id(self, order_id: str) -> Optional[Order]:
        return self._find_one(OrderRow.id == order_id)

    def find_by_reference(self, order_reference: str) -> Optional[Order]:
        return self._find_one(OrderRow.order_reference == order_reference)

    def find_by_gateway_reference_or_id(self, reference: str) -> Optional[Order]:
        """Gateways report either their own reference or our order id. Both are checked."""
        return self._find_one(or_(OrderRow.gateway_reference == reference,
                                  OrderRow.id == reference))

    def conditional_update_payment_status(self, order_id: str, expected: PaymentStatus,
                                          next_status: PaymentStatus, **fields) -> bool:
        """
        Compare-and-swap on the payment status.

        Args:
            order_id (str): Internal order id.
            expected (PaymentStatus): Status the caller observed.
            next_status (PaymentStatus): Status to write.
            **fields: Additional columns to set in the same statement
                (status, paid_at, receipt_image, gateway_reference, payment_details).

        Returns:
            bool: True if this call performed the transition, False if the order was
            missing or no longer in the expected status.
        """
        values = dict(fields, payment_status=next_status.value, updated_at=_utcnow())
        if isinstance(values.get("status"), OrderStatus):
            values["status"] = values["status"].value
        if isinstance(values.get("payment_details"), PaymentDetails):
            values["payment_details"] = values["payment_details"].model_dump(mode="json")

        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(OrderRow)
                .where(OrderRow.id == order_id, OrderRow.payment_status == expected.value)
                .values(**values)
            )
            return result.rowcount == 1

    def _update(self, order_id: str, **values) -> Order:
        with self.session_factory() as session, session.begin():
            row = session.get(OrderRow, order_id, options=[selectinload(OrderRow.items)])
            if row is None:
                raise NotFound(f"Order {order_id} not found")
            for key, value in values.items():
                setattr(row, key, value)
            session.flush()
            return _to_domain(row)

    def update_status(self, order_id: str, status: OrderStatus) -> Order:
        """Sets the fulfillment status. Raises NotFound for unknown ids."""
        return self._update(order_id, status=status.value)

    def set_archived(self, order_id: str, archived: bool) -> Order:
        return self._update(order_id, is_archived=archived)

    def archive_active(self) -> int:
        """Archives every active order and returns how many were rolled off."""
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(OrderRow)
                .where(OrderRow.is_archived.is_(False))
                .values(is_archived=True, updated_at=_utcnow())
            )
            return result.rowcount

    def list_orders(self, include_archived: bool = False, limit: Optional[int] = None) -> List[Order]:
        """Orders newest first. Archived orders only when asked for. `limit` caps the page size."""
        query = select(OrderRow).options(selectinload(OrderRow.items)).order_by(OrderRow.created_at.desc())
        if not include_archived:
            query = query.where(OrderRow.is_archived.is_(False))
        if limit:
            query = query.limit(limit)
        with self.session_factory() as session:
            return [_to_domain(row) for row in session.scalars(query)]


# --- Catalog Reader ---

def _protein_to_domain(row: ProteinRow) -> Protein:
    return Protein(id=row.id, name=row.name, price=row.price, isAvailable=row.is_available)


def _product_to_domain(row: ProductRow) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description,
        price=row.price,
        category=row.category,
        image=row.image,
        rating=row.rating,
        calories=row.calories,
        tags=list(row.tags or []),
        isAvailable=row.is_available,
        proteins=[_protein_to_domain(p) for p in row.proteins],
    )


class CatalogReader:
    """
    Catalog access.

    Cart resolution reads in bulk, one query per table whatever the cart size, and
    ignores availability: an order is priced against whatever the ids point to.
    The storefront listings only show available entries.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def list_products(self, available_only: bool = True) -> List[Product]:
        query = select(ProductRow).options(selectinload(ProductRow.proteins)).order_by(ProductRow.created_at)
        if available_only:
            query = query.where(ProductRow.is_available.is_(True))
        with self.session_factory() as session:
            return [_product_to_domain(row) for row in session.scalars(query)]

    def list_proteins(self, available_only: bool = True) -> List[Protein]:
        query = select(ProteinRow).order_by(ProteinRow.name)
        if available_only:
            query = query.where(ProteinRow.is_available.is_(True))
        with self.session_factory() as session:
            return [_protein_to_domain(row) for row in session.scalars(query)]

    def add_product(self, request: NewProductRequest) -> Product:
        """
        Creates a product, linked to the given protein add-ons.

        Raises:
            ValidationFailed: If a protein id does not exist.
        """
        with self.session_factory() as session, session.begin():
            proteins = []
            if request.proteins:
                proteins = list(session.scalars(
                    select(ProteinRow).where(ProteinRow.id.in_(set(request.proteins))).order_by(ProteinRow.name)
                ))
                unknown = set(request.proteins) - {p.id for p in proteins}
                if unknown:
                    raise ValidationFailed("Unknown protein add-ons", detail={"proteins": sorted(unknown)})
            row = ProductRow(
                name=request.name,
                description=request.description,
                price=request.price,
                category=request.category.value,
                image=request.image,
                rating=request.rating,
                calories=request.calories,
                tags=list(request.tags),
                is_available=request.isAvailable,
                proteins=proteins,
            )
            session.add(row)
            session.flush()
            product = _product_to_domain(row)
        log.info(f"[CATALOG] Product '{product.name}' created (id {product.id}).")
        return product

    def _find(self, model, ids: Iterable[str]) -> List[CatalogEntry]:
        ids = set(ids)
        if not ids:
            return []
        with self.session_factory() as session:
            rows = session.scalars(select(model).where(model.id.in_(ids)))
            return [CatalogEntry(id=row.id, name=row.name, price=row.price) for row in rows]

    def find_products_by_ids(self, ids: Iterable[str]) -> List[CatalogEntry]:
        return self._find(ProductRow, ids)

    def find_proteins_by_ids(self, ids: Iterable[str]) -> List[CatalogEntry]:
        return self._find(ProteinRow, ids)
