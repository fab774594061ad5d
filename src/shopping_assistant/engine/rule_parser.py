"""
Rule Parser - Converts textual rule conditions into expression trees.

Grammar (keywords are upper case, precedence OR < AND < NOT):

    expr     := and_expr ('OR' and_expr)*
    and_expr := not_expr ('AND' not_expr)*
    not_expr := 'NOT' not_expr | '(' expr ')' | terminal

Terminals:
    user.<path> <op> <value>
    cart.total <op> <number>        cart.total between <a> and <b>
    cart.<category>.count >= <n>
    cart.hasProducts(<id>, <id>, ...)
    time.<month|day_of_week|hour> === <value>
    time.date_range between <iso-datetime> and <iso-datetime>
"""
import re
from datetime import datetime
from typing import Any

from .expressions import (
    COMPARATORS,
    AndExpression,
    CategoryCondition,
    NotExpression,
    OrExpression,
    PriceCondition,
    ProductCondition,
    RuleExpression,
    TimeBasedCondition,
    UserAttributeExpression,
)


class RuleParseError(ValueError):
    """Raised when a rule string cannot be turned into an expression."""


TOKEN_PATTERN = re.compile(r'"[^"]*"|\'[^\']*\'|\(|\)|,|[^\s(),]+')
INT_PATTERN = re.compile(r'^-?\d+$')
FLOAT_PATTERN = re.compile(r'^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$')
CATEGORY_COUNT_PATTERN = re.compile(r'^cart\.(.+)\.count$')


def tokenize(rule_string: str) -> list[str]:
    return TOKEN_PATTERN.findall(rule_string)


def parse_value(token: str) -> Any:
    """Parse a literal token: booleans, null, numbers, quoted or bare strings."""
    if token == 'true':
        return True
    if token == 'false':
        return False
    if token == 'null':
        return None
    if INT_PATTERN.match(token):
        return int(token)
    if FLOAT_PATTERN.match(token):
        return float(token)
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ('"', "'"):
        return token[1:-1]
    return token


def _parse_number(token: str) -> float:
    try:
        return float(token)
    except ValueError:
        raise RuleParseError(f"Expected a number, got '{token}'")


class _TokenStream:
    """Cursor over a token list."""

    def __init__(self, tokens: list[str]):
        self.tokens = tokens
        self.pos = 0

    def peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self) -> str:
        token = self.peek()
        if token is None:
            raise RuleParseError("Unexpected end of rule")
        self.pos += 1
        return token

    def expect(self, expected: str):
        token = self.next()
        if token != expected:
            raise RuleParseError(f"Expected '{expected}', got '{token}'")

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)


class RuleParser:
    """Recursive-descent parser for the rule condition DSL."""

    @classmethod
    def parse(cls, rule_string: str) -> RuleExpression:
        tokens = tokenize(rule_string or '')
        if not tokens:
            raise RuleParseError("Failed to parse rule: empty rule")

        stream = _TokenStream(tokens)
        try:
            expression = cls._parse_or(stream)
        except RuleParseError as e:
            raise RuleParseError(f"Failed to parse rule: {e}") from e

        if not stream.at_end():
            raise RuleParseError(f"Failed to parse rule: unexpected token '{stream.peek()}'")
        return expression

    @classmethod
    def _parse_or(cls, stream: _TokenStream) -> RuleExpression:
        operands = [cls._parse_and(stream)]
        while stream.peek() == 'OR':
            stream.next()
            operands.append(cls._parse_and(stream))
        return operands[0] if len(operands) == 1 else OrExpression(*operands)

    @classmethod
    def _parse_and(cls, stream: _TokenStream) -> RuleExpression:
        operands = [cls._parse_not(stream)]
        while stream.peek() == 'AND':
            stream.next()
            operands.append(cls._parse_not(stream))
        return operands[0] if len(operands) == 1 else AndExpression(*operands)

    @classmethod
    def _parse_not(cls, stream: _TokenStream) -> RuleExpression:
        token = stream.peek()
        if token == 'NOT':
            stream.next()
            return NotExpression(cls._parse_not(stream))
        if token == '(':
            stream.next()
            inner = cls._parse_or(stream)
            stream.expect(')')
            return inner
        return cls._parse_terminal(stream)

    @classmethod
    def _parse_terminal(cls, stream: _TokenStream) -> RuleExpression:
        subject = stream.next()

        if subject.startswith('user.'):
            operator = stream.next()
            if operator not in COMPARATORS:
                raise RuleParseError(f"Unknown operator '{operator}'")
            return UserAttributeExpression(subject[len('user.'):], operator, parse_value(stream.next()))

        if subject == 'cart.total':
            return cls._parse_cart_total(stream)

        if subject == 'cart.hasProducts':
            stream.expect('(')
            product_ids = [str(parse_value(stream.next()))]
            while stream.peek() == ',':
                stream.next()
                product_ids.append(str(parse_value(stream.next())))
            stream.expect(')')
            return ProductCondition(product_ids)

        category_match = CATEGORY_COUNT_PATTERN.match(subject)
        if category_match:
            operator = stream.next()
            count = int(_parse_number(stream.next()))
            if operator == '>=':
                return CategoryCondition(category_match.group(1), count)
            if operator == '>':
                return CategoryCondition(category_match.group(1), count + 1)
            raise RuleParseError(f"Category counts support '>=' and '>', got '{operator}'")

        if subject.startswith('time.'):
            return cls._parse_time(subject[len('time.'):], stream)

        raise RuleParseError(f"Unable to parse terminal expression starting at '{subject}'")

    @classmethod
    def _parse_cart_total(cls, stream: _TokenStream) -> RuleExpression:
        operator = stream.next()
        if operator == 'between':
            low = _parse_number(stream.next())
            stream.expect('and')
            high = _parse_number(stream.next())
            return PriceCondition(low, high)

        value = _parse_number(stream.next())
        if operator in ('>=', '>'):
            return PriceCondition(value)
        if operator in ('<=', '<'):
            return PriceCondition(0.0, value)
        raise RuleParseError(f"Unsupported cart.total operator '{operator}'")

    @classmethod
    def _parse_time(cls, kind: str, stream: _TokenStream) -> RuleExpression:
        if kind == 'date_range':
            stream.expect('between')
            try:
                start = datetime.fromisoformat(stream.next())
                stream.expect('and')
                end = datetime.fromisoformat(stream.next())
            except ValueError as e:
                raise RuleParseError(str(e)) from e
            return TimeBasedCondition('date_range', (start, end))

        stream.expect('===')
        value = parse_value(stream.next())
        if kind in ('month', 'hour'):
            value = int(_parse_number(str(value)))
        return TimeBasedCondition(kind, value)
