import os
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Add src to path for internal imports
src_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from shopping_assistant.config.settings import Settings
from shopping_assistant.engine import Cart, CartItem, Product, ShoppingContext, UserProfile
from shopping_assistant.services.assistant_service import ShoppingAssistantService

PACKAGE_ROOT = Path(src_path) / 'shopping_assistant'

# A fixed June date keeps the December promotions out of the way
JUNE = datetime(2026, 6, 10, 12, 0, 0)


class FakeClock:
    """Manually advanced clock for timeout tests."""

    def __init__(self, start: datetime = JUNE):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        from datetime import timedelta
        self.now = self.now + timedelta(**kwargs)


def make_item(product_id: str, price: float, quantity: int = 1, category: str = "general") -> CartItem:
    return CartItem(product_id=product_id, name=f"Item {product_id}", original_price=price,
                    quantity=quantity, category=category)


def make_cart(*items: CartItem, user_id: str = "u1") -> Cart:
    cart = Cart(user_id=user_id, session_id="S1")
    for item in items:
        cart.add_item(item)
    return cart


def make_context(cart: Cart = None, user: UserProfile = None, timestamp: datetime = JUNE) -> ShoppingContext:
    return ShoppingContext(user=user or UserProfile(id="u1"), cart=cart, timestamp=timestamp)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at copies of the seed data so tests can write freely."""
    rules_csv = tmp_path / 'rules.csv'
    rules_csv.write_text((PACKAGE_ROOT / 'rules' / 'rules.csv').read_text(encoding='utf-8'), encoding='utf-8')
    return Settings(
        project_root=tmp_path,
        products_csv=PACKAGE_ROOT / 'data' / 'products.csv',
        rules_csv=rules_csv,
        orders_csv=None,
    )


@pytest.fixture
def service(settings, clock):
    """Service with the seed catalog and rules loaded and a fake clock."""
    svc = ShoppingAssistantService(settings, clock=clock)
    from shopping_assistant.data.catalog import load_catalog
    from shopping_assistant.services.rules_service import RulesService
    for product in load_catalog(settings.products_csv):
        svc.add_product(product)
    RulesService(settings.rules_csv).load_into(svc)
    return svc


@pytest.fixture
def student():
    return UserProfile(id="student-1", name="Sam", is_student=True)


@pytest.fixture
def products():
    return [
        Product(id="E1", name="Tablet", price=300.0, stock=5, category="electronics", tags=["portable"], rating=4.5),
        Product(id="E2", name="Watch", price=150.0, stock=1, category="electronics", tags=["wearable"], rating=4.0),
        Product(id="A1", name="Case", price=15.0, stock=100, category="accessories", tags=["protection"], rating=3.5),
        Product(id="A2", name="Cable", price=10.0, stock=0, category="accessories", tags=["usb-c"], rating=4.8),
    ]
