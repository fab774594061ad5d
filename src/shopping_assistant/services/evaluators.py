"""
Cart evaluators - the independent contributors to one cart evaluation.

Each evaluator has a name, a priority (higher runs first), a
`can_execute(request)` guard and an `evaluate(request)` returning a dict
whose keys the orchestrator merges: discounts, fired_rules, variables,
suggestions, recommendations, inventory_issues.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from ..engine.context import ShoppingContext
from ..engine.discounts import CategoryDiscount, DiscountComponent, apply_discounts, iter_components
from ..engine.inference import ConflictResolution, InferenceEngine
from ..engine.models import Cart, Product, UserProfile
from ..engine.rule_base import RuleBase

# Personalization scores
PURCHASE_CATEGORY_SCORE = 0.95
PURCHASE_CATEGORY_STEP = 0.05
TAG_MATCH_SCORE = 0.85
COMPLEMENTARY_SCORE = 0.90
BROWSING_SCORE = 0.7
CART_CATEGORY_SCORE = 0.75
POPULAR_SCORE = 0.65
POPULAR_MIN_RATING = 4.0
STUDENT_BOOST = 0.1
MAX_RECOMMENDATIONS = 10

COMPLEMENTARY_CATEGORIES = {
    'smartphones': ['accessories', 'audio'],
    'computers': ['accessories', 'peripherals'],
    'gaming': ['accessories', 'audio'],
    'electronics': ['accessories'],
    'audio': ['accessories'],
}


@dataclass
class EvaluationRequest:
    """Everything one evaluation pass reads."""
    user: UserProfile
    cart: Optional[Cart]
    inventory: list[Product] = field(default_factory=list)
    session_id: Optional[str] = None
    extra_discounts: list[DiscountComponent] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def context(self) -> ShoppingContext:
        return ShoppingContext(user=self.user, cart=self.cart, inventory=self.inventory, timestamp=self.timestamp)

    @property
    def has_items(self) -> bool:
        return self.cart is not None and not self.cart.is_empty

    def in_cart(self, product_id: str) -> bool:
        return self.cart is not None and self.cart.get_item(product_id) is not None


class Evaluator(Protocol):
    name: str
    priority: int

    def can_execute(self, request: EvaluationRequest) -> bool: ...

    def evaluate(self, request: EvaluationRequest) -> dict: ...


class RuleInterpreter:
    """Forward-chains the rule base over a fresh context and working memory."""

    name = "RuleInterpreter"
    priority = 10

    def __init__(self, rule_base: RuleBase, max_iterations: int = 100,
                 conflict_resolution: ConflictResolution | str = ConflictResolution.PRIORITY,
                 max_depth: int = 10):
        self.rule_base = rule_base
        self.max_iterations = max_iterations
        self.conflict_resolution = conflict_resolution
        self.max_depth = max_depth

    def can_execute(self, request: EvaluationRequest) -> bool:
        return request.cart is not None and request.user is not None

    def evaluate(self, request: EvaluationRequest) -> dict:
        engine = InferenceEngine(self.rule_base, conflict_resolution=self.conflict_resolution,
                                 max_depth=self.max_depth)
        context = request.context()
        result = engine.forward_chain(context, self.max_iterations)

        rule_offers = [
            {'variable': action.variable, 'value': action.value, 'params': dict(action.params)}
            for action in context.applied_discounts
        ]
        recommendations = [
            {'product': item, 'reason': 'Suggested by rule', 'score': 1.0}
            for item in context.recommendations
        ]
        return {
            'fired_rules': result.fired_rules,
            'iterations': result.iterations,
            'variables': dict(context.variables),
            'discounts': {'rule_offers': rule_offers, 'cart_updates': list(context.cart_updates)},
            'recommendations': recommendations,
        }


class DiscountCalculator:
    """Applies the discount trees (plus any coupon component) to the cart."""

    name = "DiscountCalculator"
    priority = 9

    def __init__(self, discount_trees: list[DiscountComponent]):
        self.discount_trees = discount_trees

    def can_execute(self, request: EvaluationRequest) -> bool:
        return request.has_items

    def evaluate(self, request: EvaluationRequest) -> dict:
        summary = apply_discounts(request.cart, self.discount_trees + request.extra_discounts, request.context())
        return {
            'discounts': {
                'discount_applied': summary.discount_amount > 0,
                'total_discount': summary.discount_amount,
                'final_total': summary.final_total,
                'original_total': summary.original_total,
                'applied_rules': summary.applied_discounts,
            }
        }


class InventoryChecker:
    """Flags cart lines that are unknown or exceed available stock."""

    name = "InventoryChecker"
    priority = 8

    def can_execute(self, request: EvaluationRequest) -> bool:
        return request.cart is not None

    def evaluate(self, request: EvaluationRequest) -> dict:
        stock = {p.id: p for p in request.inventory}
        issues = []
        for item in request.cart.items:
            product = stock.get(item.product_id)
            if product is None:
                issues.append({
                    'type': 'NOT_FOUND',
                    'product_id': item.product_id,
                    'message': f"Product {item.name} not found in inventory",
                })
            elif product.stock < item.quantity:
                issues.append({
                    'type': 'LOW_STOCK',
                    'product_id': item.product_id,
                    'requested': item.quantity,
                    'available': product.stock,
                    'message': f"Only {product.stock} units available for {item.name}",
                })
        return {'inventory_issues': issues}


class Personalization:
    """
    Scored product recommendations from purchase history, browsing history,
    cart contents and ratings. Students get a score boost on everything.
    """

    name = "PersonalizationEngine"
    priority = 7

    def can_execute(self, request: EvaluationRequest) -> bool:
        return request.user is not None

    def evaluate(self, request: EvaluationRequest) -> dict:
        return {'recommendations': self.recommend(request)}

    def recommend(self, request: EvaluationRequest) -> list[dict]:
        user = request.user
        products = request.inventory
        recommendations: list[dict] = []

        def already(product: Product) -> bool:
            return any(r['product']['id'] == product.id for r in recommendations)

        def entry(product: Product, reason: str, score: float) -> dict:
            return {'product': product.to_dict(), 'reason': reason, 'score': score}

        if user.purchase_history:
            recommendations.extend(self._from_purchases(request))

        if user.browsing_history:
            viewed = {h.get('category') for h in user.browsing_history}
            browsed = [
                p for p in products
                if p.category in viewed and not request.in_cart(p.id) and not already(p)
            ][:3]
            recommendations.extend(entry(p, 'Based on your browsing history', BROWSING_SCORE) for p in browsed)

        if request.has_items:
            cart_categories = {item.category for item in request.cart.items}
            related = [
                p for p in products
                if p.category in cart_categories and not request.in_cart(p.id)
            ][:3]
            recommendations.extend(
                entry(p, 'You might also like (from your cart category)', CART_CATEGORY_SCORE)
                for p in related if not already(p)
            )

        if len(recommendations) < 5:
            popular = sorted(
                (p for p in products
                 if not request.in_cart(p.id) and p.rating is not None and p.rating >= POPULAR_MIN_RATING),
                key=lambda p: p.rating,
                reverse=True,
            )[:3]
            recommendations.extend(
                entry(p, f"Highly rated ({p.rating:.1f} stars)", POPULAR_SCORE)
                for p in popular if not already(p)
            )

        if user.is_student:
            for rec in recommendations:
                rec['student_discount'] = True
                rec['score'] += STUDENT_BOOST

        unique = []
        seen = set()
        for rec in recommendations:
            if rec['product']['id'] not in seen:
                seen.add(rec['product']['id'])
                unique.append(rec)
        unique.sort(key=lambda r: r['score'], reverse=True)
        return unique[:MAX_RECOMMENDATIONS]

    def _from_purchases(self, request: EvaluationRequest) -> list[dict]:
        history = request.user.purchase_history
        products = request.inventory
        purchased_ids = {p.product_id for p in history}
        categories = Counter(p.category or 'general' for p in history)
        tags = Counter(tag for p in history for tag in p.tags)

        def candidate(product: Product) -> bool:
            return not request.in_cart(product.id) and product.id not in purchased_ids

        recommendations = [
            {
                'product': p.to_dict(),
                'reason': f"Based on your previous {p.category} purchases",
                'score': PURCHASE_CATEGORY_SCORE + categories[p.category] * PURCHASE_CATEGORY_STEP,
            }
            for p in products
            if candidate(p) and p.category in categories
        ][:4]

        if tags:
            recommended = {r['product']['id'] for r in recommendations}
            tag_matches = []
            for p in products:
                matching = [tag for tag in p.tags if tag in tags]
                if not matching or not candidate(p) or p.id in recommended:
                    continue
                tag_matches.append({
                    'product': p.to_dict(),
                    'reason': f"Similar to items you bought: {', '.join(matching[:2])}",
                    'score': TAG_MATCH_SCORE + sum(tags[t] for t in matching) / 10,
                })
            recommendations.extend(tag_matches[:3])

        complementary = []
        for purchase in history:
            for related_category in COMPLEMENTARY_CATEGORIES.get(purchase.category, []):
                related = [p for p in products if p.category == related_category and candidate(p)][:2]
                complementary.extend(
                    {
                        'product': p.to_dict(),
                        'reason': f"Perfect accessory for your {purchase.category} purchase",
                        'score': COMPLEMENTARY_SCORE,
                    }
                    for p in related
                )
        recommendations.extend(complementary[:2])
        return recommendations


class CartOptimizer:
    """Money-saving suggestions for the current cart."""

    name = "CartOptimizer"
    priority = 6

    def __init__(self, discount_trees: list[DiscountComponent],
                 free_shipping_threshold: float = 50.0, shipping_cost: float = 9.99):
        self.discount_trees = discount_trees
        self.free_shipping_threshold = free_shipping_threshold
        self.shipping_cost = shipping_cost

    def can_execute(self, request: EvaluationRequest) -> bool:
        return request.has_items

    def evaluate(self, request: EvaluationRequest) -> dict:
        cart = request.cart
        suggestions = []
        suggestions.extend(self.check_bundles(cart))
        suggestions.extend(self.check_category_discounts(cart))
        suggestions.extend(self.check_shipping(cart))
        suggestions.extend(self.check_alternatives(cart, request.inventory))
        suggestions.extend(self.check_duplicates(cart))
        return {'suggestions': suggestions}

    def check_bundles(self, cart: Cart) -> list[dict]:
        electronics = [item for item in cart.items if item.category == 'electronics']
        if len(electronics) != 1:
            return []
        return [{
            'type': 'BUNDLE',
            'priority': 'HIGH',
            'message': 'Add one more electronics item to get 20% off!',
            'potential_saving': cart.subtotal * 0.2,
        }]

    def check_category_discounts(self, cart: Cart) -> list[dict]:
        in_cart = {item.category for item in cart.items}
        suggestions = []
        seen = set()
        for tree in self.discount_trees:
            for component in iter_components(tree):
                if not isinstance(component, CategoryDiscount):
                    continue
                if component.category in in_cart or component.category in seen:
                    continue
                seen.add(component.category)
                suggestions.append({
                    'type': 'CATEGORY_DISCOUNT',
                    'priority': 'MEDIUM',
                    'message': f"Get {component.percentage:g}% off on {component.category} items",
                    'category': component.category,
                })
        return suggestions

    def check_shipping(self, cart: Cart) -> list[dict]:
        subtotal = cart.subtotal
        if not 0 < subtotal < self.free_shipping_threshold:
            return []
        return [{
            'type': 'FREE_SHIPPING',
            'priority': 'HIGH',
            'message': f"Add ${self.free_shipping_threshold - subtotal:.2f} more for FREE shipping!",
            'potential_saving': self.shipping_cost,
        }]

    def check_alternatives(self, cart: Cart, inventory: list[Product]) -> list[dict]:
        suggestions = []
        for item in cart.items:
            cheaper = [
                p for p in inventory
                if p.category == item.category
                and p.id != item.product_id
                and cart.get_item(p.id) is None
                and p.stock > 0
                and p.price < item.original_price
            ]
            if not cheaper:
                continue
            best = min(cheaper, key=lambda p: p.price)
            suggestions.append({
                'type': 'ALTERNATIVE',
                'priority': 'LOW',
                'message': f"{best.name} is a cheaper alternative to {item.name}",
                'product_id': item.product_id,
                'alternative_id': best.id,
                'potential_saving': (item.original_price - best.price) * item.quantity,
            })
        return suggestions

    def check_duplicates(self, cart: Cart) -> list[dict]:
        return [
            {
                'type': 'DUPLICATE',
                'priority': 'LOW',
                'message': f'You have {item.quantity} of "{item.name}"',
            }
            for item in cart.items if item.quantity > 1
        ]


def potential_savings(suggestions: list[dict]) -> float:
    return sum(s.get('potential_saving', 0) for s in suggestions)

