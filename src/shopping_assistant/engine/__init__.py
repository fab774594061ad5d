"""Engine subpackage - rule expressions, discounts and inference."""
from .context import ShoppingContext
from .discounts import CompositeDiscount, DiscountBuilder, DiscountComponent, Strategy, apply_discounts
from .expressions import RuleExpression
from .inference import ConflictResolution, InferenceEngine
from .models import ActionResult, Cart, CartItem, Product, UserProfile
from .rule_base import ActionType, Rule, RuleAction, RuleBase, RuleDefinition, WorkingMemory
from .rule_parser import RuleParseError, RuleParser

__all__ = [
    'ShoppingContext', 'CompositeDiscount', 'DiscountBuilder', 'DiscountComponent', 'Strategy',
    'apply_discounts', 'RuleExpression', 'ConflictResolution', 'InferenceEngine', 'ActionResult',
    'Cart', 'CartItem', 'Product', 'UserProfile', 'ActionType', 'Rule', 'RuleAction', 'RuleBase',
    'RuleDefinition', 'WorkingMemory', 'RuleParseError', 'RuleParser',
]
