"""
Discount components - composable price reductions over a cart.

Leaves (percentage, fixed amount, buy-X-get-Y bundle, category percentage)
compute an amount over original prices; CompositeDiscount aggregates the
applied children with one of the Strategy values. Every amount is between
0 and the subtotal it was computed from.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional

from .context import ShoppingContext
from .expressions import RuleExpression
from .models import Cart, CartItem


class Strategy(str, Enum):
    MAX = "MAX"
    MIN = "MIN"
    SUM = "SUM"
    MULTIPLY = "MULTIPLY"
    FIRST = "FIRST"


@dataclass
class DiscountResult:
    """Outcome of applying one discount component to a cart."""
    applied: bool
    amount: float = 0.0
    message: str = ""
    rule: Optional[str] = None
    percentage: Optional[float] = None
    fixed_amount: Optional[float] = None
    category: Optional[str] = None
    bundle_count: Optional[int] = None
    free_units: Optional[int] = None
    discounted_units: list[tuple[str, int]] = field(default_factory=list)
    strategy: Optional[str] = None
    applied_rules: list[str] = field(default_factory=list)
    breakdown: list['DiscountResult'] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {
            "applied": self.applied,
            "amount": self.amount,
            "message": self.message,
            "rule": self.rule,
        }
        optional = {
            "percentage": self.percentage,
            "fixed_amount": self.fixed_amount,
            "category": self.category,
            "bundle_count": self.bundle_count,
            "free_units": self.free_units,
            "strategy": self.strategy,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        if self.applied_rules:
            result["applied_rules"] = list(self.applied_rules)
        if self.breakdown:
            result["breakdown"] = [r.to_dict() for r in self.breakdown]
        return result


def _not_applied(message: str) -> DiscountResult:
    return DiscountResult(applied=False, amount=0.0, message=message)


def _subtotal(items: list[CartItem]) -> float:
    return sum(item.original_price * item.quantity for item in items)


def _generate_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _clamp_percentage(percentage: float) -> float:
    return min(max(float(percentage), 0.0), 100.0)


class DiscountComponent:
    """Common surface of every discount node."""

    kind = "discount"

    def __init__(self, name: str, condition: Optional[RuleExpression] = None):
        self.name = name
        self.id = _generate_id()
        self.condition = condition

    def is_applicable(self, cart: Cart, context: ShoppingContext) -> bool:
        if self.condition is None:
            return True
        return self.condition.interpret(context)

    def apply(self, cart: Cart, context: ShoppingContext) -> DiscountResult:
        raise NotImplementedError

    def calculate(self, cart: Cart, context: ShoppingContext) -> float:
        return self.apply(cart, context).amount

    @property
    def description(self) -> str:
        return self.name

    def _when(self) -> str:
        return f" when {self.condition}" if self.condition is not None else ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.kind,
            "description": self.description,
        }


class PercentageDiscount(DiscountComponent):
    """Percentage of the whole cart subtotal."""

    kind = "percentage"

    def __init__(self, name: str, percentage: float, condition: Optional[RuleExpression] = None):
        super().__init__(name, condition)
        self.percentage = _clamp_percentage(percentage)

    def apply(self, cart: Cart, context: ShoppingContext) -> DiscountResult:
        if not self.is_applicable(cart, context):
            return _not_applied("Condition not met")

        amount = _subtotal(cart.items) * (self.percentage / 100)
        return DiscountResult(
            applied=True,
            amount=amount,
            percentage=self.percentage,
            message=f"{self.percentage:g}% discount applied",
            rule=self.name,
        )

    @property
    def description(self) -> str:
        return f"{self.percentage:g}% off{self._when()}"

    def to_dict(self) -> dict:
        return {**super().to_dict(), "percentage": self.percentage}


class FixedAmountDiscount(DiscountComponent):
    """Flat amount off, never more than the cart subtotal."""

    kind = "fixed_amount"

    def __init__(self, name: str, amount: float, condition: Optional[RuleExpression] = None):
        super().__init__(name, condition)
        self.amount = max(float(amount), 0.0)

    def apply(self, cart: Cart, context: ShoppingContext) -> DiscountResult:
        if not self.is_applicable(cart, context):
            return _not_applied("Condition not met")

        amount = min(self.amount, _subtotal(cart.items))
        return DiscountResult(
            applied=True,
            amount=amount,
            fixed_amount=self.amount,
            message=f"${self.amount:.2f} discount applied",
            rule=self.name,
        )

    @property
    def description(self) -> str:
        return f"${self.amount:.2f} off{self._when()}"

    def to_dict(self) -> dict:
        return {**super().to_dict(), "amount": self.amount}


class BundleDiscount(DiscountComponent):
    """
    Buy X get Y free, optionally restricted to one category.

    Free units are taken from the cheapest units first.
    """

    kind = "bundle"

    def __init__(self, name: str, buy_quantity: int, get_quantity: int, category: Optional[str] = None):
        super().__init__(name)
        if buy_quantity <= 0:
            raise ValueError("buy_quantity must be positive")
        if get_quantity < 0:
            raise ValueError("get_quantity cannot be negative")
        self.buy_quantity = buy_quantity
        self.get_quantity = get_quantity
        self.category = category

    def apply(self, cart: Cart, context: ShoppingContext) -> DiscountResult:
        items = cart.items
        if self.category:
            items = [item for item in items if item.category == self.category]

        total_quantity = sum(item.quantity for item in items)
        bundles = total_quantity // self.buy_quantity
        if bundles == 0 or self.get_quantity == 0:
            return _not_applied("Bundle requirement not met")

        free_units = bundles * self.get_quantity
        amount = 0.0
        discounted = []
        for item in sorted(items, key=lambda i: i.original_price):
            if free_units <= 0:
                break
            units = min(free_units, item.quantity)
            amount += item.original_price * units
            discounted.append((item.product_id, units))
            free_units -= units

        return DiscountResult(
            applied=True,
            amount=amount,
            bundle_count=bundles,
            free_units=sum(units for _, units in discounted),
            discounted_units=discounted,
            category=self.category,
            message=f"Buy {self.buy_quantity} Get {self.get_quantity} applied",
            rule=self.name,
        )

    @property
    def description(self) -> str:
        category_text = f" in {self.category}" if self.category else ""
        return f"Buy {self.buy_quantity} Get {self.get_quantity} Free{category_text}"

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "buy_quantity": self.buy_quantity,
            "get_quantity": self.get_quantity,
            "category": self.category,
        }


class CategoryDiscount(DiscountComponent):
    """Percentage off the lines of one category."""

    kind = "category"

    def __init__(self, name: str, category: str, percentage: float,
                 condition: Optional[RuleExpression] = None):
        super().__init__(name, condition)
        self.category = category
        self.percentage = _clamp_percentage(percentage)

    def apply(self, cart: Cart, context: ShoppingContext) -> DiscountResult:
        if not self.is_applicable(cart, context):
            return _not_applied("Condition not met")

        category_items = [item for item in cart.items if item.category == self.category]
        amount = _subtotal(category_items) * (self.percentage / 100)
        if amount == 0:
            return _not_applied(f"No {self.category} items in cart")

        return DiscountResult(
            applied=True,
            amount=amount,
            percentage=self.percentage,
            category=self.category,
            message=f"{self.percentage:g}% off {self.category}",
            rule=self.name,
        )

    @property
    def description(self) -> str:
        return f"{self.percentage:g}% off {self.category} items{self._when()}"

    def to_dict(self) -> dict:
        return {**super().to_dict(), "category": self.category, "percentage": self.percentage}


def _aggregate_max(amounts: list[float], subtotal: float) -> float:
    return max(amounts)


def _aggregate_min(amounts: list[float], subtotal: float) -> float:
    return min(amounts)


def _aggregate_sum(amounts: list[float], subtotal: float) -> float:
    return min(sum(amounts), subtotal)


def _aggregate_multiply(amounts: list[float], subtotal: float) -> float:
    # Each child's share of the subtotal is re-applied to what is left
    if subtotal <= 0:
        return 0.0
    remaining = subtotal
    for amount in amounts:
        remaining -= remaining * (amount / subtotal)
    return subtotal - remaining


def _aggregate_first(amounts: list[float], subtotal: float) -> float:
    return amounts[0]


AGGREGATORS: dict[str, Callable[[list[float], float], float]] = {
    Strategy.MAX.value: _aggregate_max,
    Strategy.MIN.value: _aggregate_min,
    Strategy.SUM.value: _aggregate_sum,
    Strategy.MULTIPLY.value: _aggregate_multiply,
    Strategy.FIRST.value: _aggregate_first,
}


def _strategy_key(strategy) -> str:
    if isinstance(strategy, Strategy):
        return strategy.value
    return str(strategy).upper()


class CompositeDiscount(DiscountComponent):
    """Aggregates child discounts; unknown strategies fall back to MAX."""

    kind = "composite"

    def __init__(self, name: str, strategy: str | Strategy = Strategy.MAX):
        super().__init__(name)
        self.strategy = _strategy_key(strategy)
        self._children: list[DiscountComponent] = []

    def add(self, component: DiscountComponent) -> 'CompositeDiscount':
        self._children.append(component)
        return self

    def remove(self, component: DiscountComponent) -> 'CompositeDiscount':
        if component in self._children:
            self._children.remove(component)
        return self

    def get_child(self, index: int) -> DiscountComponent:
        return self._children[index]

    @property
    def children(self) -> list[DiscountComponent]:
        return list(self._children)

    def apply(self, cart: Cart, context: ShoppingContext) -> DiscountResult:
        results = [child.apply(cart, context) for child in self._children]
        results = [r for r in results if r.applied]
        if not results:
            return _not_applied("No applicable discounts")

        aggregate = AGGREGATORS.get(self.strategy, _aggregate_max)
        amount = aggregate([r.amount for r in results], _subtotal(cart.items))

        return DiscountResult(
            applied=True,
            amount=amount,
            strategy=self.strategy,
            applied_rules=[r.rule for r in results],
            message=self._strategy_message(results),
            rule=self.name,
            breakdown=results,
        )

    def _strategy_message(self, results: list[DiscountResult]) -> str:
        if self.strategy == Strategy.MAX.value:
            best = max(results, key=lambda r: r.amount)
            return f"Best discount: {best.rule}"
        if self.strategy == Strategy.SUM.value:
            return f"Combined discounts: {' + '.join(r.rule for r in results)}"
        if self.strategy == Strategy.MULTIPLY.value:
            return f"Stacked discounts: {len(results)} rules applied"
        return f"{len(results)} discount(s) applied"

    @property
    def description(self) -> str:
        return f"Composite ({self.strategy}): {', '.join(c.description for c in self._children)}"

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "strategy": self.strategy,
            "children": [child.to_dict() for child in self._children],
        }


class DiscountBuilder:
    """
    Fluent construction of discount trees.

    Leaves are added to the innermost open composite. A composite created
    while another is open is nested inside it; end_composite() closes it.
    A leaf added with no open composite becomes the root.
    """

    def __init__(self):
        self.root: Optional[DiscountComponent] = None
        self._stack: list[CompositeDiscount] = []

    @property
    def current(self) -> Optional[CompositeDiscount]:
        return self._stack[-1] if self._stack else None

    def _attach(self, component: DiscountComponent):
        if self.current is not None:
            self.current.add(component)
        else:
            self.root = component

    def create_composite(self, name: str, strategy: str | Strategy = Strategy.MAX) -> 'DiscountBuilder':
        composite = CompositeDiscount(name, strategy)
        self._attach(composite)
        self._stack.append(composite)
        return self

    def end_composite(self) -> 'DiscountBuilder':
        if self._stack:
            self._stack.pop()
        return self

    def add_percentage(self, name: str, percentage: float,
                       condition: Optional[RuleExpression] = None) -> 'DiscountBuilder':
        self._attach(PercentageDiscount(name, percentage, condition))
        return self

    def add_fixed_amount(self, name: str, amount: float,
                         condition: Optional[RuleExpression] = None) -> 'DiscountBuilder':
        self._attach(FixedAmountDiscount(name, amount, condition))
        return self

    def add_bundle(self, name: str, buy_quantity: int, get_quantity: int,
                   category: Optional[str] = None) -> 'DiscountBuilder':
        self._attach(BundleDiscount(name, buy_quantity, get_quantity, category))
        return self

    def add_category(self, name: str, category: str, percentage: float,
                     condition: Optional[RuleExpression] = None) -> 'DiscountBuilder':
        self._attach(CategoryDiscount(name, category, percentage, condition))
        return self

    def build(self) -> Optional[DiscountComponent]:
        return self.root


def iter_components(component: DiscountComponent) -> Iterator[DiscountComponent]:
    """Depth-first walk over a discount tree."""
    yield component
    if isinstance(component, CompositeDiscount):
        for child in component.children:
            yield from iter_components(child)


def distribute_discount(cart: Cart, total_discount: float, labels: list[str]):
    """
    Spread a cart-level discount over the lines by their share of the
    subtotal, then turn each share into a per-unit price reduction.
    """
    subtotal = cart.subtotal
    if subtotal <= 0 or total_discount <= 0:
        return

    total_discount = min(total_discount, subtotal)
    for item in cart.items:
        if item.quantity <= 0:
            continue
        item_discount = total_discount * (item.subtotal / subtotal)
        item.set_price(item.original_price - item_discount / item.quantity)
        item.applied_discounts = list(labels)


@dataclass
class DiscountSummary:
    """Cart-level result of applying a set of discount trees."""
    original_total: float
    discount_amount: float
    final_total: float
    applied_discounts: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "original_total": self.original_total,
            "discount_amount": self.discount_amount,
            "final_total": self.final_total,
            "applied_discounts": list(self.applied_discounts),
        }


def apply_discounts(cart: Cart, components: list[DiscountComponent],
                    context: ShoppingContext) -> DiscountSummary:
    """
    Apply every top-level discount tree to the cart and write the combined
    reduction back onto the lines. Earlier reductions are cleared first so
    repeated evaluation never compounds.
    """
    cart.clear_discounts()
    subtotal = cart.subtotal

    applied = []
    total = 0.0
    for component in components:
        result = component.apply(cart, context)
        if result.applied:
            applied.append({"rule": component.name, "amount": result.amount, "details": result.to_dict()})
            total += result.amount

    total = min(total, subtotal)
    if total > 0:
        distribute_discount(cart, total, [a["rule"] for a in applied])

    return DiscountSummary(
        original_total=subtotal,
        discount_amount=total,
        final_total=subtotal - total,
        applied_discounts=applied,
    )
