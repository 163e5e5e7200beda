"""
models.py — Data Models for Order Placement and Settlement

This module defines the data structures used for order creation, persistence and payment.
It uses Pydantic models to ensure type safety and automatic validation of incoming data.

Models:
    - CartItem / NewOrderRequest: Unvalidated cart and customer data from the storefront.
    - Product / Protein / Menu / NewProductRequest: Catalog as shown to and edited by staff.
    - LineItem: A priced, frozen entry of an order.
    - Order: The central aggregate (identity, pricing, fulfillment, payment state).
    - ManualOrderPlaced / GatewaySessionOpened: Tagged results of order placement.
    - VerifyPaymentRequest / UpdateOrderStatusRequest / ArchiveRequest: Staff payloads.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class DeliveryMethod(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class OrderStatus(str, Enum):
    """Fulfillment status, set by staff. Any value may follow any value."""
    PENDING = "pending"
    PREPARING = "preparing"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status, owned by the payment flow. pending → success is one-way."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# Upper bounds of a single storefront order, checked at the request boundary.
MAX_CART_ITEMS = 50
MAX_QUANTITY = 100
MAX_PROTEINS_PER_ITEM = 10
MAX_DELIVERY_KM = 100


class CartItem(BaseModel):
    """
    Represents a single product in the customer's cart.

    Attributes:
        product (str): Catalog id of the product.
        quantity (int): Number of portions, 1 to MAX_QUANTITY.
        proteins (List[str]): Optional protein add-on ids.
    """
    product: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)
    proteins: List[str] = Field(default_factory=list, max_length=MAX_PROTEINS_PER_ITEM)


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)


class NewOrderRequest(BaseModel):
    """
    Represents a new order submitted by the storefront.

    Attributes:
        items (List[CartItem]): Cart content, at least one entry.
        customerName (str): Name shown to staff.
        email (str): Customer email, also used for the gateway session.
        phoneNumber (str): Contact number.
        address (str): Delivery address (replaced by the pickup location for pickups).
        deliveryMethod (DeliveryMethod): 'delivery' or 'pickup'.
        deliveryCoordinates (Coordinates | None): Customer location, delivery only.
        deliveryDistance (float | None): Distance in km from the kitchen, delivery only.
        verificationCode (str | None): Code already shown to the customer by the UI.
    """
    items: List[CartItem] = Field(..., min_length=1, max_length=MAX_CART_ITEMS)
    customerName: str = Field(..., min_length=2, max_length=200)
    email: EmailStr
    phoneNumber: str = Field(..., min_length=10, max_length=40)
    address: str = Field(..., min_length=5, max_length=500)
    deliveryMethod: DeliveryMethod
    deliveryCoordinates: Optional[Coordinates] = None
    deliveryDistance: Optional[float] = Field(None, ge=0, le=MAX_DELIVERY_KM, allow_inf_nan=False)
    verificationCode: Optional[str] = Field(None, max_length=40)


class CatalogEntry(BaseModel):
    """A product or protein as read from the catalog."""
    id: str
    name: str
    price: int


class ProductCategory(str, Enum):
    GRAINS = "Grains"
    DRINKS = "Drinks"


class Protein(BaseModel):
    """Protein add-on as shown on the menu."""
    id: str
    name: str
    price: int
    isAvailable: bool = True


class Product(BaseModel):
    """Menu product with the protein add-ons it can be ordered with."""
    id: str
    name: str
    description: str = ""
    price: int
    category: ProductCategory
    image: str = ""
    rating: float = 0
    calories: int = 0
    tags: List[str] = Field(default_factory=list)
    isAvailable: bool = True
    proteins: List[Protein] = Field(default_factory=list)


class Menu(BaseModel):
    """Available products and proteins in one payload."""
    products: List[Product]
    proteins: List[Protein]


class NewProductRequest(BaseModel):
    """
    Product created by staff.

    `image` is the URL of an already hosted picture.
    `proteins` lists the ids of the add-ons offered with the product.
    """
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=1000)
    price: int = Field(..., ge=0, le=10_000_000)
    category: ProductCategory
    image: str = Field("", max_length=1000)
    rating: float = Field(0, ge=0, le=5)
    calories: int = Field(0, ge=0, le=100_000)
    tags: List[str] = Field(default_factory=list)
    isAvailable: bool = True
    proteins: List[str] = Field(default_factory=list)


class LineItem(BaseModel):
    """
    Priced entry of an order. The name and price snapshots never follow later catalog changes.

    `price` is the unit price: base product price plus all resolved protein prices.
    """
    model_config = ConfigDict(frozen=True)

    product: str
    productName: str
    quantity: int
    price: int
    proteins: List[str] = Field(default_factory=list)
    proteinNames: List[str] = Field(default_factory=list)

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity


class PaymentDetails(BaseModel):
    """Snapshot of what the gateway reported for the last payment event."""
    method: str
    amount: Optional[int] = None
    customer: Optional[dict] = None
    paidAt: Optional[datetime] = None
    failedAt: Optional[datetime] = None
    reason: Optional[str] = None
    metadata: Optional[dict] = None


class Order(BaseModel):
    """
    The order aggregate.

    Exactly one of `pickupCode` / `deliveryCode` is set, matching `deliveryMethod`.
    `id` is None until the order has been written to the store.
    """
    id: Optional[str] = None
    orderReference: str
    paymentReference: str
    paymentMethod: str

    items: List[LineItem]
    deliveryFee: int = 0
    totalAmount: int

    customerName: str
    email: str
    phoneNumber: str
    address: str
    deliveryMethod: DeliveryMethod
    deliveryCoordinates: Optional[Coordinates] = None
    deliveryDistance: Optional[float] = None
    pickupCode: Optional[str] = None
    deliveryCode: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    paymentStatus: PaymentStatus = PaymentStatus.PENDING
    gatewayReference: Optional[str] = None
    paymentDetails: Optional[PaymentDetails] = None
    paidAt: Optional[datetime] = None
    receiptImage: Optional[str] = None
    isArchived: bool = False

    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @property
    def verificationCode(self) -> Optional[str]:
        return self.pickupCode or self.deliveryCode


class PaymentInstructions(BaseModel):
    """Static bank transfer details returned to manual-flow customers."""
    bankName: str
    accountNumber: str
    accountName: str
    whatsappNumber: str
    message: str


class GatewaySession(BaseModel):
    """Payment session opened at the gateway."""
    redirectUrl: str
    reference: str


class ManualOrderPlaced(BaseModel):
    """Manual flow result: the order is stored and awaits proof of payment."""
    kind: Literal["manual"] = "manual"
    order: Order
    paymentInstructions: PaymentInstructions


class GatewaySessionOpened(BaseModel):
    """Gateway flow result: nothing is stored until the gateway confirms payment."""
    kind: Literal["gateway"] = "gateway"
    orderReference: str
    authorizationUrl: str
    reference: str


PlacementResult = Union[ManualOrderPlaced, GatewaySessionOpened]


class VerifyPaymentRequest(BaseModel):
    orderId: str = Field(..., min_length=1)
    receiptImage: Optional[str] = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class ArchiveRequest(BaseModel):
    isArchived: bool = True
