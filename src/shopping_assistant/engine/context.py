"""
Shopping context - the per-evaluation view rules are interpreted against.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .models import Cart, Product, UserProfile


@dataclass
class ShoppingContext:
    """
    Transient snapshot of user, cart and inventory for one evaluation pass.

    Rule actions write into `variables`, `applied_discounts`,
    `recommendations` and `cart_updates`; expressions only read.
    """
    user: Optional[UserProfile]
    cart: Optional[Cart]
    inventory: list[Product] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    variables: dict[str, Any] = field(default_factory=dict)
    applied_discounts: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    cart_updates: list = field(default_factory=list)

    def set_variable(self, key: str, value: Any):
        self.variables[key] = value

    def get_variable(self, key: str, default=None):
        return self.variables.get(key, default)

    def _items(self) -> list:
        if self.cart is None:
            return []
        return self.cart.items

    def get_cart_total(self) -> float:
        return sum(item.original_price * item.quantity for item in self._items())

    def get_cart_item_count(self) -> int:
        return sum(item.quantity for item in self._items())

    def get_category_count(self, category: str) -> int:
        """Number of distinct cart lines in a category."""
        return len([item for item in self._items() if item.category == category])

    def has_product(self, product_id: str) -> bool:
        return any(item.product_id == product_id for item in self._items())

    def snapshot(self) -> dict:
        """Copy of everything rule actions can change."""
        return {
            "variables": dict(self.variables),
            "applied_discounts": list(self.applied_discounts),
            "recommendations": list(self.recommendations),
            "cart_updates": list(self.cart_updates),
        }
