import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

# ---- Money ----

CENT = Decimal("0.01")

MAX_QUANTITY = 10_000
MAX_UNIT_PRICE = Decimal("1000000")
MAX_LINE_TOTAL = Decimal("10000000")


def to_money(value: Any) -> Decimal:
    """Coerce a driver value (Decimal, float, int, str, None) to a 2dp Decimal."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# Decimals go over the wire as JSON numbers
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def _not_null(value: Any) -> Any:
    # Patch fields may be omitted but not cleared when the column is NOT NULL
    if value is None:
        raise ValueError("Field cannot be null")
    return value


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return re.sub(r"[<>]", "", value.strip())


# ---- Orders ----

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Statuses whose item list may still change
EDITABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


def _normalize_status(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class OrderItemIn(BaseModel):
    """One line of a new order, or an item added to an existing order."""
    product_id: int = Field(..., ge=1)
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)
    unit_price: Money = Field(..., ge=0, le=MAX_UNIT_PRICE)
    product_name: Optional[str] = Field(None, max_length=255)

    @field_validator("product_name")
    @classmethod
    def clean_product_name(cls, v: Optional[str]) -> Optional[str]:
        v = _clean_text(v)
        if v is not None and not v:
            raise ValueError("Product name cannot be empty")
        return v

    @model_validator(mode="after")
    def check_line_total(self) -> "OrderItemIn":
        if self.quantity * self.unit_price > MAX_LINE_TOTAL:
            raise ValueError("Total item price cannot exceed $10,000,000")
        return self

    @property
    def line_total(self) -> Decimal:
        return to_money(self.quantity * self.unit_price)


class CreateOrderRequest(BaseModel):
    user_id: Optional[int] = Field(None, ge=1)
    user_name: Optional[str] = Field(None, max_length=100)
    user_location: Optional[str] = Field(None, max_length=500)
    order_status: Optional[OrderStatus] = None
    total_price: Optional[Money] = Field(None, ge=0)
    items: List[OrderItemIn] = Field(default_factory=list)

    @field_validator("order_status", mode="before")
    @classmethod
    def lower_status(cls, v: Any) -> Any:
        return _normalize_status(v)

    @field_validator("user_name", "user_location")
    @classmethod
    def clean(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)


class OrderPatch(BaseModel):
    """Sparse set of mutable order fields; unset fields are left untouched."""
    user_id: Optional[int] = Field(None, ge=1)
    user_name: Optional[str] = Field(None, max_length=100)
    user_location: Optional[str] = Field(None, max_length=500)
    order_status: Optional[OrderStatus] = None
    total_price: Optional[Money] = Field(None, ge=0)

    @field_validator("user_id", "order_status", "total_price", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)

    @field_validator("order_status", mode="before")
    @classmethod
    def lower_status(cls, v: Any) -> Any:
        return _normalize_status(v)

    @field_validator("user_name")
    @classmethod
    def clean_name(cls, v: Optional[str]) -> Optional[str]:
        v = _clean_text(v)
        if v is not None and not v:
            raise ValueError("User name cannot be empty")
        return v

    @field_validator("user_location")
    @classmethod
    def clean_location(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)


class OrderItem(BaseModel):
    id: int
    order_id: int
    product_id: int
    product_name: Optional[str] = None
    product_description: Optional[str] = None
    quantity: int
    unit_price: Money
    total_price: Money


class Order(BaseModel):
    id: int
    user_id: int
    user_name: Optional[str] = None
    user_location: Optional[str] = None
    order_status: OrderStatus
    total_price: Money
    created_at: datetime
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)


class CreatedOrder(BaseModel):
    order_id: int
    total_price: Money


class AddedItem(BaseModel):
    item_id: int
    order_id: int
    line_total: Money


class UpdateResult(BaseModel):
    updated: bool
    message: str
    fields: List[str] = Field(default_factory=list)


# ---- Order responses (wire names follow the admin panel) ----

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateOrderResponse(_CamelModel):
    message: str = "Order created successfully"
    order_id: int = Field(..., alias="orderId")
    total_price: Money = Field(..., alias="totalPrice")
    item_count: int = Field(0, alias="itemCount")


class UpdateOrderResponse(_CamelModel):
    message: str
    order_id: int = Field(..., alias="orderId")
    updated_fields: List[str] = Field(default_factory=list, alias="updatedFields")


class ItemDetails(_CamelModel):
    product_id: int = Field(..., alias="productId")
    quantity: int
    unit_price: Money = Field(..., alias="unitPrice")
    total_price: Money = Field(..., alias="totalPrice")


class AddItemResponse(_CamelModel):
    message: str = "Item added to order successfully"
    order_id: int = Field(..., alias="orderId")
    item_details: ItemDetails = Field(..., alias="itemDetails")


class RemoveItemResponse(_CamelModel):
    message: str = "Item removed from order successfully"
    item_id: int = Field(..., alias="itemId")


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    from_: str = Field(..., alias="from")
    to: str


class TotalPriceResponse(_CamelModel):
    total_price: Money = Field(..., alias="totalPrice")
    date_range: DateRange = Field(..., alias="dateRange")


class MessageResponse(BaseModel):
    message: str


# ---- Catalog ----

class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    price: Money = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        v = _clean_text(v)
        if not v:
            raise ValueError("Product name cannot be empty")
        return v


class ProductPatch(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    price: Optional[Money] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None

    @field_validator("name", "price", "quantity", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)


class Product(BaseModel):
    id: int
    name: str
    price: Money
    quantity: int = 0
    description: Optional[str] = None


class ProductImageIn(BaseModel):
    """Metadata for an image already stored in object storage."""
    product_id: int = Field(..., ge=1)
    image_url: str = Field(..., min_length=1, max_length=512)
    image_key: str = Field(..., min_length=1, max_length=255)
    alt_text: Optional[str] = Field(None, max_length=255)
    display_order: int = Field(0, ge=0)
    is_primary: bool = False

    @field_validator("alt_text")
    @classmethod
    def clean_alt_text(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)


class ProductImagePatch(BaseModel):
    alt_text: Optional[str] = Field(None, max_length=255)
    display_order: Optional[int] = Field(None, ge=0)
    is_primary: Optional[bool] = None

    @field_validator("display_order", "is_primary", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)

    @field_validator("alt_text")
    @classmethod
    def clean_alt_text(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)


class ProductImage(BaseModel):
    id: int
    product_id: int
    image_url: str
    image_key: str
    alt_text: Optional[str] = None
    display_order: int = 0
    is_primary: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
NAME_RE = re.compile(r"^[^\W\d_]+(?:[\s\-'][^\W\d_]+)*$")

Gender = Literal["male", "female", "other", "prefer not to say"]


def _check_person_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v or len(v) > 50 or not NAME_RE.match(v):
        raise ValueError("Name must contain only letters, spaces, hyphens and apostrophes")
    return v


def _check_phone(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    cleaned = re.sub(r"[\s\-\(\)]", "", v.strip())
    if not PHONE_RE.match(cleaned):
        raise ValueError("Phone number must be in international format")
    return cleaned


def _check_birthdate(v: Optional[date]) -> Optional[date]:
    if v is None:
        return v
    today = date.today()
    if v > today:
        raise ValueError("Birthdate cannot be in the future")
    if v.year < today.year - 120:
        raise ValueError("Birthdate is too far in the past")
    return v


class UserIn(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone_number: Optional[str] = None
    birthdate: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[str] = Field(None, max_length=500)

    @field_validator("first_name", "last_name")
    @classmethod
    def check_names(cls, v: Optional[str]) -> Optional[str]:
        return _check_person_name(v)

    @field_validator("phone_number")
    @classmethod
    def check_phone_number(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)

    @field_validator("birthdate")
    @classmethod
    def check_birthdate_value(cls, v: Optional[date]) -> Optional[date]:
        return _check_birthdate(v)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class UserPatch(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    birthdate: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[str] = Field(None, max_length=500)

    @field_validator("first_name", "last_name", "email", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)

    @field_validator("first_name", "last_name")
    @classmethod
    def check_names(cls, v: Optional[str]) -> Optional[str]:
        return _check_person_name(v)

    @field_validator("phone_number")
    @classmethod
    def check_phone_number(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)

    @field_validator("birthdate")
    @classmethod
    def check_birthdate_value(cls, v: Optional[date]) -> Optional[date]:
        return _check_birthdate(v)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class User(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    phone_number: Optional[str] = None
    birthdate: Optional[date] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    created_at: Optional[datetime] = None
