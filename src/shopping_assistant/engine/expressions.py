"""
Rule expressions - composable boolean predicates over a ShoppingContext.

Terminal expressions test one fact (user attribute, cart total, category
count, time, product membership); AND / OR / NOT combine them. Every
`interpret` call is side-effect free and never raises on missing data:
an absent attribute simply fails to match.
"""
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .context import ShoppingContext


DAYS_OF_WEEK = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


def resolve_path(obj: Any, path: str) -> Any:
    """Walk a dotted path through mappings and attributes; None when any hop is missing."""
    for key in path.split('.'):
        if obj is None:
            return None
        if isinstance(obj, Mapping) or hasattr(obj, 'get') and not isinstance(obj, (list, tuple, str)):
            obj = obj.get(key)
        else:
            obj = getattr(obj, key, None)
    return obj


def format_value(value: Any) -> str:
    """Render a literal the way the rule DSL spells it."""
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    if value is None:
        return 'null'
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, str) and (value == '' or any(c in value for c in ' ()')):
        return f'"{value}"'
    return str(value)


def _strict_equals(actual: Any, expected: Any) -> bool:
    # Booleans only equal booleans (True is not 1)
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    return actual == expected


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual, expected):
        if actual is None or expected is None:
            return False
        try:
            return bool(op(actual, expected))
        except TypeError:
            return False
    return compare


COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    '===': _strict_equals,
    '!==': lambda a, e: not _strict_equals(a, e),
    '>': _ordered(lambda a, e: a > e),
    '>=': _ordered(lambda a, e: a >= e),
    '<': _ordered(lambda a, e: a < e),
    '<=': _ordered(lambda a, e: a <= e),
    'includes': lambda a, e: isinstance(a, (list, tuple, set, frozenset)) and e in a,
    'startsWith': lambda a, e: isinstance(a, str) and isinstance(e, str) and a.startswith(e),
}


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a DSL comparison operator; unknown operators never match."""
    comparator = COMPARATORS.get(operator)
    if comparator is None:
        return False
    return comparator(actual, expected)


class RuleExpression:
    """Base of the expression tree; subclasses implement interpret and __str__."""

    def interpret(self, context: ShoppingContext) -> bool:
        raise NotImplementedError

    def terminal_count(self) -> int:
        """Number of terminal conditions, counted through AND / OR."""
        return 1


@dataclass(frozen=True)
class UserAttributeExpression(RuleExpression):
    """user.<path> <operator> <value>"""
    attribute: str
    operator: str
    value: Any

    def interpret(self, context: ShoppingContext) -> bool:
        actual = resolve_path(context.user, self.attribute)
        return compare(actual, self.operator, self.value)

    def __str__(self) -> str:
        return f"user.{self.attribute} {self.operator} {format_value(self.value)}"


@dataclass(frozen=True)
class PriceCondition(RuleExpression):
    """Cart total within [min_price, max_price] (inclusive)."""
    min_price: float = 0.0
    max_price: float = float('inf')

    def interpret(self, context: ShoppingContext) -> bool:
        total = context.get_cart_total()
        return self.min_price <= total <= self.max_price

    def __str__(self) -> str:
        if self.max_price == float('inf'):
            return f"cart.total >= {format_value(float(self.min_price))}"
        return (f"cart.total between {format_value(float(self.min_price))} "
                f"and {format_value(float(self.max_price))}")


@dataclass(frozen=True)
class CategoryCondition(RuleExpression):
    """At least min_count cart lines in a category."""
    category: str
    min_count: int = 1

    def interpret(self, context: ShoppingContext) -> bool:
        return context.get_category_count(self.category) >= self.min_count

    def __str__(self) -> str:
        return f"cart.{self.category}.count >= {self.min_count}"


def _month_matches(now: datetime, value) -> bool:
    return now.month == value


def _day_matches(now: datetime, value) -> bool:
    return isinstance(value, str) and DAYS_OF_WEEK[now.weekday()] == value.lower()


def _hour_matches(now: datetime, value) -> bool:
    return now.hour == value


def _range_matches(now: datetime, value) -> bool:
    start, end = value
    return start <= now <= end


TIME_CHECKS: dict[str, Callable[[datetime, Any], bool]] = {
    'month': _month_matches,
    'day_of_week': _day_matches,
    'hour': _hour_matches,
    'date_range': _range_matches,
}


@dataclass(frozen=True)
class TimeBasedCondition(RuleExpression):
    """
    Calendar check against the context timestamp.

    kind is one of month (1-12), day_of_week ("friday"), hour (0-23)
    or date_range (value is a (start, end) datetime pair).
    """
    kind: str
    value: Any

    def interpret(self, context: ShoppingContext) -> bool:
        check = TIME_CHECKS.get(self.kind)
        if check is None:
            return False
        try:
            return check(context.timestamp, self.value)
        except (TypeError, ValueError):
            return False

    def __str__(self) -> str:
        if self.kind == 'date_range':
            start, end = self.value
            return f"time.date_range between {start.isoformat()} and {end.isoformat()}"
        return f"time.{self.kind} === {format_value(self.value)}"


@dataclass(frozen=True, init=False)
class ProductCondition(RuleExpression):
    """Cart contains any of the given products."""
    product_ids: tuple[str, ...]

    def __init__(self, product_ids):
        if isinstance(product_ids, str):
            product_ids = (product_ids,)
        object.__setattr__(self, 'product_ids', tuple(product_ids))

    def interpret(self, context: ShoppingContext) -> bool:
        return any(context.has_product(pid) for pid in self.product_ids)

    def __str__(self) -> str:
        return f"cart.hasProducts({', '.join(self.product_ids)})"


@dataclass(frozen=True, init=False)
class AndExpression(RuleExpression):
    expressions: tuple[RuleExpression, ...]

    def __init__(self, *expressions: RuleExpression):
        object.__setattr__(self, 'expressions', tuple(expressions))

    def interpret(self, context: ShoppingContext) -> bool:
        return all(expr.interpret(context) for expr in self.expressions)

    def terminal_count(self) -> int:
        return sum(expr.terminal_count() for expr in self.expressions)

    def __str__(self) -> str:
        return f"({' AND '.join(str(e) for e in self.expressions)})"


@dataclass(frozen=True, init=False)
class OrExpression(RuleExpression):
    expressions: tuple[RuleExpression, ...]

    def __init__(self, *expressions: RuleExpression):
        object.__setattr__(self, 'expressions', tuple(expressions))

    def interpret(self, context: ShoppingContext) -> bool:
        return any(expr.interpret(context) for expr in self.expressions)

    def terminal_count(self) -> int:
        return sum(expr.terminal_count() for expr in self.expressions)

    def __str__(self) -> str:
        return f"({' OR '.join(str(e) for e in self.expressions)})"


@dataclass(frozen=True)
class NotExpression(RuleExpression):
    expression: RuleExpression

    def interpret(self, context: ShoppingContext) -> bool:
        return not self.expression.interpret(context)

    def __str__(self) -> str:
        return f"NOT ({self.expression})"


def count_conditions(expression: Optional[RuleExpression]) -> int:
    """Specificity of a condition tree; a missing condition counts as zero."""
    if expression is None:
        return 0
    return expression.terminal_count()
