"""
Data models for the shopping assistant engine.

Uses dataclasses for structured, type-safe data representation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class Product:
    """A product in the read-only inventory snapshot."""
    id: str
    name: str
    price: float
    stock: int = 0
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    rating: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "stock": self.stock,
            "category": self.category,
            "tags": list(self.tags),
            "rating": self.rating,
        }


@dataclass
class PurchaseRecord:
    """One purchased line, appended to a user's history after checkout."""
    order_id: str
    product_id: str
    name: str
    category: str
    price: float
    tags: list[str] = field(default_factory=list)
    purchase_date: datetime = field(default_factory=datetime.now)


@dataclass
class UserProfile:
    """
    User snapshot consumed by rule expressions and personalization.

    Anything not modelled as a field lives in `attributes` and is still
    reachable through dotted-path lookups (e.g. "membership.tier").
    """
    id: str
    name: str = ""
    is_student: bool = False
    browsing_history: list[dict] = field(default_factory=list)
    purchase_history: list[PurchaseRecord] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default=None):
        """Mapping-style access used by dotted-path resolution."""
        if key in self.__dataclass_fields__:
            return getattr(self, key)
        return self.attributes.get(key, default)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_student": self.is_student,
            "browsing_history": list(self.browsing_history),
            "purchase_history": [
                {
                    "order_id": p.order_id,
                    "product_id": p.product_id,
                    "name": p.name,
                    "category": p.category,
                    "price": p.price,
                    "tags": list(p.tags),
                    "purchase_date": p.purchase_date.isoformat(),
                }
                for p in self.purchase_history
            ],
            "attributes": dict(self.attributes),
        }


@dataclass
class CartItem:
    """A single line in a cart. `price` is the current (possibly discounted) unit price."""
    product_id: str
    name: str
    original_price: float
    quantity: int = 1
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    price: Optional[float] = None
    applied_discounts: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.original_price < 0:
            raise ValueError(f"Negative price for product {self.product_id}")
        if self.price is None:
            self.price = self.original_price
        self.set_price(self.price)

    def set_price(self, price: float):
        """Set the current unit price, kept within [0, original_price]."""
        self.price = min(max(price, 0.0), self.original_price)

    def clear_discounts(self):
        self.applied_discounts = []
        self.price = self.original_price

    @property
    def subtotal(self) -> float:
        """Line value at original price."""
        return self.original_price * self.quantity

    @property
    def total_price(self) -> float:
        """Line value at current price."""
        return self.price * self.quantity

    @property
    def discount_amount(self) -> float:
        return (self.original_price - self.price) * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "original_price": self.original_price,
            "price": self.price,
            "quantity": self.quantity,
            "category": self.category,
            "tags": list(self.tags),
            "total_price": self.total_price,
            "discount_amount": self.discount_amount,
            "applied_discounts": list(self.applied_discounts),
        }


@dataclass
class Cart:
    """Ordered collection of cart lines keyed by product id."""
    user_id: str
    session_id: str
    items: list[CartItem] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def _touch(self):
        self.updated_at = datetime.now()

    def get_item(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def add_item(self, item: CartItem):
        """Add a line, merging quantities when the product is already present."""
        existing = self.get_item(item.product_id)
        if existing:
            existing.quantity += item.quantity
        else:
            self.items.append(item)
        self._touch()

    def remove_item(self, product_id: str):
        self.items = [i for i in self.items if i.product_id != product_id]
        self._touch()

    def update_quantity(self, product_id: str, quantity: int):
        """Set a line quantity; zero or less removes the line."""
        item = self.get_item(product_id)
        if item:
            item.quantity = max(0, quantity)
            if item.quantity == 0:
                self.remove_item(product_id)
            self._touch()

    def clear(self):
        self.items = []
        self._touch()

    def clear_discounts(self):
        for item in self.items:
            item.clear_discounts()

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    @property
    def subtotal(self) -> float:
        return sum(item.subtotal for item in self.items)

    @property
    def total(self) -> float:
        return sum(item.total_price for item in self.items)

    @property
    def total_discount(self) -> float:
        return self.subtotal - self.total

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal,
            "total": self.total,
            "total_discount": self.total_discount,
            "item_count": self.item_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ActionResult:
    """Outcome of a public operation. Business rejections come back with success=False."""
    success: bool
    message: str
    state: Optional[str] = None
    new_state: Optional[str] = None
    cart: Optional[dict] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        result = {"success": self.success, "message": self.message}
        if self.state is not None:
            result["state"] = self.state
        if self.new_state is not None:
            result["new_state"] = self.new_state
        if self.cart is not None:
            result["cart"] = self.cart
        result.update(self.data)
        return result
