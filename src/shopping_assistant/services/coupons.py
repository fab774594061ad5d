"""
Coupons - the coupon catalogue, eligibility and conversion to discounts.

An applied coupon is stored on the session as its code and turned into a
discount component on every evaluation, so it never compounds.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from ..engine.discounts import CategoryDiscount, DiscountComponent, FixedAmountDiscount, PercentageDiscount
from ..engine.expressions import PriceCondition
from ..engine.models import Cart, UserProfile


@dataclass(frozen=True)
class Coupon:
    code: str
    discount: str
    description: str
    type: str  # percentage, fixed or category
    value: float
    eligible: Callable[[UserProfile], bool]
    min_purchase: Optional[float] = None
    category: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            'code': self.code,
            'discount': self.discount,
            'description': self.description,
            'type': self.type,
            'value': self.value,
        }
        if self.min_purchase is not None:
            result['min_purchase'] = self.min_purchase
        if self.category is not None:
            result['category'] = self.category
        return result


COUPONS: tuple[Coupon, ...] = (
    Coupon(
        code='STUDENT2024',
        discount='15% OFF',
        description='Student discount on all items',
        type='percentage',
        value=15,
        eligible=lambda user: user.is_student,
    ),
    Coupon(
        code='NEWYEAR25',
        discount='$25 OFF',
        description='New Year special - $25 off on orders above $100',
        type='fixed',
        value=25,
        min_purchase=100,
        eligible=lambda user: True,
    ),
    Coupon(
        code='TECH20',
        discount='20% OFF',
        description='Electronics category - 20% discount',
        type='category',
        value=20,
        category='electronics',
        eligible=lambda user: True,
    ),
    Coupon(
        code='FIRSTBUY',
        discount='$10 OFF',
        description='First purchase special',
        type='fixed',
        value=10,
        eligible=lambda user: not user.purchase_history,
    ),
)


def find_coupon(code: str) -> Optional[Coupon]:
    code = (code or '').strip().upper()
    for coupon in COUPONS:
        if coupon.code == code:
            return coupon
    return None


def available_coupons(user: UserProfile) -> list[Coupon]:
    return [c for c in COUPONS if c.eligible(user)]


def check_coupon(code: str, user: UserProfile, cart: Optional[Cart]) -> Optional[str]:
    """Why the coupon cannot be applied, or None when it can."""
    coupon = find_coupon(code)
    if coupon is None:
        return "Invalid or ineligible coupon"
    if coupon.code == 'STUDENT2024' and not user.is_student:
        return "This coupon is only available for students"
    if not coupon.eligible(user):
        return "Invalid or ineligible coupon"
    if cart is None or cart.is_empty:
        return "Cart is empty"
    if coupon.min_purchase is not None and cart.subtotal < coupon.min_purchase:
        return f"Minimum purchase of ${coupon.min_purchase:.0f} required"
    return None


def coupon_component(coupon: Coupon) -> DiscountComponent:
    name = f"Coupon {coupon.code}"
    if coupon.type == 'percentage':
        return PercentageDiscount(name, coupon.value)
    if coupon.type == 'category':
        return CategoryDiscount(name, coupon.category, coupon.value)
    condition = PriceCondition(coupon.min_purchase) if coupon.min_purchase is not None else None
    return FixedAmountDiscount(name, coupon.value, condition)
