"""
Database Schemas for the Storefront

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name:
- User -> "user"
- Category -> "category"
- Product -> "product"
- Order -> "order"

Field names are snake_case in Python and camelCase on the wire and in the
stored documents (see the aliases). References to other documents are
carried as ObjectId strings here and stored as ObjectId.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["user", "admin"]
PaymentStatus = Literal["pending", "paid", "failed"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]


class StoreModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, allow_inf_nan=False)


# ----------------------- Users -----------------------
class CartItem(StoreModel):
    product: str
    quantity: int = Field(1, ge=1)


class User(StoreModel):
    uid: str = Field(..., min_length=1, description="External identity provider id")
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr
    phone: str
    image: Optional[str] = None
    role: Role = "user"
    cart: List[CartItem] = []
    wishlist: List[str] = []


# ----------------------- Categories -----------------------
class Category(StoreModel):
    name: str = Field(..., min_length=1)
    slug: str
    image: Optional[str] = None
    is_nav: bool = Field(False, alias="isNav")
    parent_id: Optional[str] = Field(None, alias="parentId")


# ----------------------- Products -----------------------
class Pricing(StoreModel):
    regular: float = Field(..., ge=0)
    discount: Optional[float] = Field(None, ge=0)


class ProductDetails(StoreModel):
    description: Optional[str] = None
    specification: Optional[str] = None
    warranty: Optional[str] = None


class Seo(StoreModel):
    meta_title: Optional[str] = Field(None, alias="metaTitle")
    meta_description: Optional[str] = Field(None, alias="metaDescription")


class ProductBase(StoreModel):
    name: str = Field(..., min_length=1)
    brand: str = "Unbranded"
    category: str
    pricing: Pricing
    stock: int = Field(0, ge=0)
    status: bool = False
    images: List[str] = []
    details: ProductDetails = ProductDetails()
    seo: Seo = Seo()


class Product(ProductBase):
    slug: str


def effective_price(pricing: dict) -> float:
    """Unit price a buyer pays: the discount price when one is set, else the regular price."""
    discount = pricing.get("discount")
    return discount if discount is not None else pricing["regular"]


# ----------------------- Orders -----------------------
class OrderItem(StoreModel):
    product: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., description="Unit price at the time of order")


class ShippingAddress(StoreModel):
    full_name: str = Field(..., min_length=1, alias="fullName")
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1, alias="postalCode")
    country: str = Field(..., min_length=1)


class Order(StoreModel):
    user: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0, alias="totalAmount")
    shipping_address: ShippingAddress = Field(..., alias="shippingAddress")
    payment_status: PaymentStatus = Field("pending", alias="paymentStatus")
    order_status: OrderStatus = Field("pending", alias="orderStatus")
