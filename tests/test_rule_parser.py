from datetime import datetime

import pytest

from shopping_assistant.engine import UserProfile
from shopping_assistant.engine.expressions import (
    AndExpression,
    CategoryCondition,
    NotExpression,
    OrExpression,
    PriceCondition,
    ProductCondition,
    TimeBasedCondition,
    UserAttributeExpression,
    count_conditions,
)
from shopping_assistant.engine.rule_parser import RuleParseError, RuleParser, parse_value

from conftest import JUNE, make_cart, make_context, make_item


def test_parse_user_attribute():
    expr = RuleParser.parse("user.is_student === true")
    assert expr == UserAttributeExpression("is_student", "===", True)


def test_parse_precedence_and_binds_tighter_than_or():
    expr = RuleParser.parse("user.a === 1 OR user.b === 2 AND user.c === 3")
    assert isinstance(expr, OrExpression)
    assert expr.expressions[0] == UserAttributeExpression("a", "===", 1)
    assert isinstance(expr.expressions[1], AndExpression)


def test_parse_parentheses_and_not():
    expr = RuleParser.parse("(user.is_student === true AND NOT cart.stationery.count >= 1)")
    assert expr == AndExpression(
        UserAttributeExpression("is_student", "===", True),
        NotExpression(CategoryCondition("stationery", 1)),
    )


def test_parse_cart_terminals():
    assert RuleParser.parse("cart.total >= 200") == PriceCondition(200.0)
    assert RuleParser.parse("cart.total <= 50") == PriceCondition(0.0, 50.0)
    assert RuleParser.parse("cart.total between 50 and 150") == PriceCondition(50.0, 150.0)
    assert RuleParser.parse("cart.electronics.count > 1") == CategoryCondition("electronics", 2)
    assert RuleParser.parse("cart.hasProducts(P001, P002)") == ProductCondition(["P001", "P002"])


def test_parse_time_terminals():
    assert RuleParser.parse("time.month === 12") == TimeBasedCondition("month", 12)
    assert RuleParser.parse("time.day_of_week === friday") == TimeBasedCondition("day_of_week", "friday")
    expr = RuleParser.parse("time.date_range between 2026-06-01T00:00:00 and 2026-06-30T23:59:59")
    assert expr == TimeBasedCondition("date_range", (datetime(2026, 6, 1), datetime(2026, 6, 30, 23, 59, 59)))


@pytest.mark.parametrize("rule", [
    "",
    "user.age >",
    "user.age ~~ 3",
    "inventory.size > 3",
    "(user.a === 1",
    "user.a === 1 user.b === 2",
    "cart.total ~ 5",
    "cart.total >= lots",
    "cart.hasProducts P001",
])
def test_invalid_rules_raise(rule):
    with pytest.raises(RuleParseError):
        RuleParser.parse(rule)


def test_parse_error_is_a_value_error():
    with pytest.raises(ValueError, match="Failed to parse rule"):
        RuleParser.parse("nonsense")


@pytest.mark.parametrize("rule", [
    "user.is_student === true",
    "user.membership.tier === gold",
    "cart.total >= 100",
    "cart.total between 10 and 20",
    "cart.electronics.count >= 2",
    "cart.hasProducts(P001, P002)",
    "time.month === 12",
    "(user.is_student === true OR cart.total >= 500)",
    "NOT (time.day_of_week === sunday)",
    "(user.is_student === true AND NOT (cart.stationery.count >= 1))",
])
def test_rendered_rule_parses_back_to_the_same_tree(rule):
    expr = RuleParser.parse(rule)
    assert RuleParser.parse(str(expr)) == expr


def test_parse_value_literals():
    assert parse_value("true") is True
    assert parse_value("false") is False
    assert parse_value("null") is None
    assert parse_value("42") == 42
    assert parse_value("2.5") == 2.5
    assert parse_value('"two words"') == "two words"
    assert parse_value("gold") == "gold"


def test_strict_equality_does_not_mix_bools_and_numbers():
    context = make_context(user=UserProfile(id="u1", is_student=True))
    assert RuleParser.parse("user.is_student === true").interpret(context)
    assert not RuleParser.parse("user.is_student === 1").interpret(context)
    assert RuleParser.parse("user.is_student !== false").interpret(context)


def test_missing_attribute_never_matches():
    context = make_context(user=UserProfile(id="u1"))
    assert not RuleParser.parse("user.age > 18").interpret(context)
    assert not RuleParser.parse("user.membership.tier === gold").interpret(context)


def test_nested_attribute_and_list_operators():
    user = UserProfile(id="u1", attributes={"membership": {"tier": "gold"}, "tags": ["vip"], "email": "a@uni.edu"})
    context = make_context(user=user)
    assert RuleParser.parse("user.membership.tier === gold").interpret(context)
    assert RuleParser.parse("user.tags includes vip").interpret(context)
    assert RuleParser.parse("user.email startsWith a@").interpret(context)


def test_cart_conditions_use_original_prices():
    item = make_item("E1", 120.0, category="electronics")
    item.set_price(10.0)
    context = make_context(cart=make_cart(item, make_item("E2", 90.0, category="electronics")))
    assert PriceCondition(200).interpret(context)
    assert CategoryCondition("electronics", 2).interpret(context)
    assert ProductCondition("E2").interpret(context)
    assert not ProductCondition(["X1", "X2"]).interpret(context)


def test_conditions_on_missing_cart_are_false():
    context = make_context(cart=None)
    assert not PriceCondition(1).interpret(context)
    assert not CategoryCondition("electronics").interpret(context)


def test_time_conditions_read_the_context_timestamp():
    context = make_context(timestamp=JUNE)
    assert TimeBasedCondition("month", 6).interpret(context)
    assert not TimeBasedCondition("month", 12).interpret(context)
    assert TimeBasedCondition("day_of_week", "Wednesday").interpret(context)
    assert TimeBasedCondition("hour", 12).interpret(context)
    assert not TimeBasedCondition("fortnight", 1).interpret(context)


def test_count_conditions():
    expr = RuleParser.parse("user.a === 1 AND (user.b === 2 OR user.c === 3) AND NOT user.d === 4")
    assert count_conditions(expr) == 4
    assert count_conditions(None) == 0


def test_unknown_operator_never_matches():
    context = make_context(user=UserProfile(id="u1", is_student=True))
    assert UserAttributeExpression("is_student", "=~", True).interpret(context) is False
    assert UserAttributeExpression("name", "contains", "").interpret(context) is False


def test_strict_cart_total_bounds_are_inclusive():
    context = make_context(cart=make_cart(make_item("P1", 100.0)))
    above = RuleParser.parse("cart.total > 100")
    below = RuleParser.parse("cart.total < 100")

    assert above == PriceCondition(100.0)
    assert below == PriceCondition(0.0, 100.0)
    assert above.interpret(context)
    assert below.interpret(context)
    assert str(above) == "cart.total >= 100"
    assert str(below) == "cart.total between 0 and 100"
