"""
Shopping Assistant Service - the application facade.

Owns the event store, rule base, discount trees, session manager, order
repository and cart evaluator. Construct it explicitly (or with `create`)
and pass it to whatever needs it.

Every cart mutation and the re-evaluation that follows run under the
session's lock, so evaluations of one session never interleave.
"""
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config.settings import Settings
from ..data.catalog import load_catalog
from ..engine.discounts import DiscountBuilder, DiscountComponent
from ..engine.expressions import CategoryCondition, PriceCondition, TimeBasedCondition, UserAttributeExpression
from ..engine.models import ActionResult, CartItem, Product, PurchaseRecord, UserProfile
from ..engine.rule_base import Rule, RuleBase
from ..session.manager import SessionManager
from ..session.orders import CheckoutData, CsvOrderRepository, InMemoryOrderRepository, OrderRepository
from ..session.state_machine import SessionState, ShoppingSession
from ..utils.logger import get_logger, set_level
from .cart_evaluator import CartEvaluation, CartEvaluator
from .coupons import available_coupons, check_coupon, coupon_component, find_coupon
from .evaluators import (
    CartOptimizer,
    DiscountCalculator,
    EvaluationRequest,
    InventoryChecker,
    Personalization,
    RuleInterpreter,
)
from .event_store import EventStore
from .pricing import cart_analytics
from .rules_service import RulesService

logger = get_logger("services.assistant")

SESSION_NOT_FOUND = "Session not found"
USER_NOT_FOUND = "User not found"


def build_default_discounts() -> list[DiscountComponent]:
    """The stock promotions: student combo, electronics bundle, holiday season."""
    student_combo = (
        DiscountBuilder()
        .create_composite('Student & Cart Combo', 'SUM')
        .add_percentage('Student Discount', 15, UserAttributeExpression('is_student', '===', True))
        .add_percentage('High Value Cart', 10, PriceCondition(100))
        .build()
    )

    electronics_bundle = (
        DiscountBuilder()
        .create_composite('Electronics Bundle', 'MAX')
        .add_category('Electronics Discount', 'electronics', 20, CategoryCondition('electronics', 2))
        .add_bundle('Buy 2 Get 1', 2, 1, 'electronics')
        .build()
    )

    holiday_season = (
        DiscountBuilder()
        .create_composite('Holiday Season', 'MAX')
        .add_percentage('December Sale', 25, TimeBasedCondition('month', 12))
        .add_fixed_amount('New Year Special', 50, PriceCondition(200))
        .build()
    )

    return [student_combo, electronics_bundle, holiday_season]


class ShoppingAssistantService:
    """Session, cart and evaluation operations for the shopping assistant."""

    def __init__(
        self,
        settings: Settings,
        event_store: Optional[EventStore] = None,
        rule_base: Optional[RuleBase] = None,
        order_repository: Optional[OrderRepository] = None,
        discount_trees: Optional[list[DiscountComponent]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.clock = clock
        self.events = event_store or EventStore(clock=clock)
        self.rule_base = rule_base or RuleBase()
        if order_repository is None:
            order_repository = (
                CsvOrderRepository(settings.orders_csv) if settings.orders_csv else InMemoryOrderRepository()
            )
        self.order_repository = order_repository
        self.discount_trees = discount_trees if discount_trees is not None else build_default_discounts()

        self.session_manager = SessionManager(
            timeout_minutes=settings.session_timeout_minutes,
            order_repository=self.order_repository,
            clock=clock,
            on_abandon=self._on_timeout,
        )

        self.personalization = Personalization()
        self.evaluator = CartEvaluator(
            [
                RuleInterpreter(
                    self.rule_base,
                    max_iterations=settings.max_iterations,
                    conflict_resolution=settings.conflict_resolution,
                    max_depth=settings.max_depth,
                ),
                DiscountCalculator(self.discount_trees),
                InventoryChecker(),
                self.personalization,
                CartOptimizer(
                    self.discount_trees,
                    free_shipping_threshold=settings.free_shipping_threshold,
                    shipping_cost=settings.shipping_cost,
                ),
            ],
            settings,
        )

        self._rules_lock = threading.Lock()
        self._coupons: dict[str, str] = {}

    @classmethod
    def create(cls, settings: Settings) -> 'ShoppingAssistantService':
        """Service with the catalog and rules loaded from the configured CSV files."""
        set_level(settings.log_level)
        service = cls(settings)
        for product in load_catalog(settings.products_csv):
            service.add_product(product)

        RulesService(settings.rules_csv).load_into(service)
        logger.info(
            f"Loaded {len(service.events.get_all_inventory())} products and {len(service.rule_base)} rules"
        )
        return service

    def start(self):
        self.session_manager.start_sweeper(self.settings.sweep_interval_seconds, sweep=self.sweep_sessions)

    def shutdown(self):
        self.session_manager.stop_sweeper()

    def sweep_sessions(self, now: Optional[datetime] = None) -> dict:
        """
        Abandon idle sessions, forget finished ones past the retention window
        and trim the event log. The background sweeper calls this.
        """
        retention = timedelta(minutes=self.settings.session_retention_minutes)
        abandoned = self.session_manager.sweep_timeouts(now)
        evicted = self.session_manager.evict_finished(retention, now)
        for session_id in evicted:
            self._coupons.pop(session_id, None)
            if self.events.get_session(session_id) is not None:
                self.events.remove_session(session_id)
        self.events.cleanup(max_age=retention, now=now)
        compacted = self.events.compact(self.settings.max_event_log)
        return {'abandoned': abandoned, 'evicted': evicted, 'compacted_events': compacted}

    # Users

    def register_user(self, user: UserProfile) -> UserProfile:
        self.events.set_user(user)
        return user

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.events.get_user(user_id)

    # Sessions

    def _publish_session(self, session: ShoppingSession):
        self.events.set_session(session.session_id, session.to_dict())
        if session.cart is not None:
            self.events.set_cart(session.user_id, session.cart.to_dict())

    def _on_timeout(self, session: ShoppingSession):
        self._coupons.pop(session.session_id, None)
        self._publish_session(session)

    def start_session(self, user_id: str, user: Optional[UserProfile] = None) -> ActionResult:
        if user is not None:
            self.register_user(user)
        elif self.get_user(user_id) is None:
            self.register_user(UserProfile(id=user_id))

        session = self.session_manager.create_session(user_id)
        self._publish_session(session)
        self.events.clear_recommendations(user_id)

        return ActionResult(
            success=True,
            message="Session started",
            state=session.get_state_name(),
            data={'session_id': session.session_id, 'user': self.get_user(user_id).to_dict()},
        )

    def get_session(self, session_id: str) -> ActionResult:
        session = self.session_manager.get_session(session_id)
        if session is None:
            return ActionResult(success=False, message=SESSION_NOT_FOUND)
        return ActionResult(success=True, message="Session found", state=session.get_state_name(),
                            data={'session': session.to_dict()})

    def browse(self, session_id: str, product_id: str) -> ActionResult:
        session = self.session_manager.get_session(session_id)
        if session is None:
            return ActionResult(success=False, message=SESSION_NOT_FOUND)
        product = self.get_product(product_id)
        if product is None:
            return ActionResult(success=False, message=f"Product {product_id} not found")

        with session.lock:
            result = session.browse(product)
            if result.success:
                user = self.get_user(session.user_id)
                if user is not None:
                    viewed = {'product_id': product.id, 'category': product.category, 'timestamp': self.clock()}
                    self.events.set_user(replace(user, browsing_history=[*user.browsing_history, viewed]))
                self._publish_session(session)
        return result

    def _mutate_cart(self, session_id: str, mutate: Callable[[ShoppingSession], ActionResult]) -> ActionResult:
        session = self.session_manager.get_session(session_id)
        if session is None:
            return ActionResult(success=False, message=SESSION_NOT_FOUND)

        with session.lock:
            result = mutate(session)
            if not result.success:
                return result
            if session.cart is not None and not session.cart.is_empty:
                evaluation = self._evaluate(session)
                result.data['evaluation'] = evaluation.to_dict()
            else:
                self._coupons.pop(session.session_id, None)
            result.cart = session.cart.to_dict() if session.cart is not None else None
            self._publish_session(session)
        return result

    def add_to_cart(self, session_id: str, product_id: str, quantity: int = 1) -> ActionResult:
        product = self.get_product(product_id)
        if product is None:
            return ActionResult(success=False, message=f"Product {product_id} not found")

        item = CartItem(
            product_id=product.id,
            name=product.name,
            original_price=product.price,
            quantity=quantity,
            category=product.category,
            tags=list(product.tags),
        )
        return self._mutate_cart(session_id, lambda s: s.add_to_cart(item))

    def update_cart_item(self, session_id: str, product_id: str, quantity: int) -> ActionResult:
        return self._mutate_cart(session_id, lambda s: s.update_cart(product_id, quantity))

    def remove_from_cart(self, session_id: str, product_id: str) -> ActionResult:
        return self._mutate_cart(session_id, lambda s: s.remove_from_cart(product_id))

    def _transition(self, session_id: str, operation: Callable[[ShoppingSession], ActionResult]) -> ActionResult:
        session = self.session_manager.get_session(session_id)
        if session is None:
            return ActionResult(success=False, message=SESSION_NOT_FOUND)
        with session.lock:
            result = operation(session)
            if result.success:
                self._publish_session(session)
        return result

    def proceed_to_checkout(self, session_id: str) -> ActionResult:
        return self._transition(session_id, lambda s: s.proceed_to_checkout())

    def cancel_checkout(self, session_id: str) -> ActionResult:
        return self._transition(session_id, lambda s: s.cancel_checkout())

    def abandon_session(self, session_id: str) -> ActionResult:
        return self._transition(session_id, lambda s: s.abandon_session())

    def complete_checkout(self, session_id: str, checkout_data: Optional[CheckoutData]) -> ActionResult:
        def complete(session: ShoppingSession) -> ActionResult:
            result = session.complete_checkout(checkout_data)
            if result.success:
                self._record_purchases(session)
                self._coupons.pop(session.session_id, None)
            return result

        return self._transition(session_id, complete)

    def _record_purchases(self, session: ShoppingSession):
        user = self.get_user(session.user_id)
        order = session.last_order
        if user is None or order is None:
            return
        purchases = [
            PurchaseRecord(
                order_id=order.order_id,
                product_id=item['product_id'],
                name=item['name'],
                category=item['category'],
                price=item['price'],
                tags=list(item['tags']),
                purchase_date=order.created_at,
            )
            for item in order.items
        ]
        self.events.set_user(replace(user, purchase_history=[*user.purchase_history, *purchases]))

    # Evaluation

    def _evaluate(self, session: ShoppingSession) -> CartEvaluation:
        extra = []
        code = self._coupons.get(session.session_id)
        if code:
            extra.append(coupon_component(find_coupon(code)))

        request = EvaluationRequest(
            user=self.get_user(session.user_id) or UserProfile(id=session.user_id),
            cart=session.cart,
            inventory=self.events.get_all_inventory(),
            session_id=session.session_id,
            extra_discounts=extra,
            timestamp=self.clock(),
        )
        evaluation = self.evaluator.evaluate(request)
        self.events.set_recommendations(session.user_id, evaluation.recommendations)
        return evaluation

    def evaluate_cart(self, session_id: str) -> ActionResult:
        session = self.session_manager.get_session(session_id)
        if session is None:
            return ActionResult(success=False, message=SESSION_NOT_FOUND)

        with session.lock:
            if session.cart is None or session.cart.is_empty:
                return ActionResult(success=True, message="Cart is empty", state=session.get_state_name(),
                                    data={'evaluation': CartEvaluation().to_dict()})
            evaluation = self._evaluate(session)
            self._publish_session(session)
            return ActionResult(
                success=True,
                message="Cart evaluated",
                state=session.get_state_name(),
                cart=session.cart.to_dict(),
                data={'evaluation': evaluation.to_dict(), 'analytics': cart_analytics(session.cart)},
            )

    def get_recommendations(self, user_id: str) -> ActionResult:
        user = self.get_user(user_id)
        if user is None:
            return ActionResult(success=False, message=USER_NOT_FOUND)

        sessions = [s for s in self.session_manager.get_active_sessions() if s.user_id == user_id]
        cart = sessions[-1].cart if sessions else None
        request = EvaluationRequest(user=user, cart=cart, inventory=self.events.get_all_inventory(),
                                    timestamp=self.clock())
        recommendations = self.personalization.recommend(request)
        self.events.set_recommendations(user_id, recommendations)
        return ActionResult(success=True, message=f"{len(recommendations)} recommendations",
                            data={'recommendations': recommendations})

    # Coupons

    def get_available_coupons(self, user_id: str) -> ActionResult:
        user = self.get_user(user_id)
        if user is None:
            return ActionResult(success=False, message=USER_NOT_FOUND)
        return ActionResult(success=True, message="Available coupons",
                            data={'coupons': [c.to_dict() for c in available_coupons(user)]})

    def apply_coupon(self, session_id: str, code: str) -> ActionResult:
        session = self.session_manager.get_session(session_id)
        if session is None:
            return ActionResult(success=False, message=SESSION_NOT_FOUND)
        user = self.get_user(session.user_id)
        if user is None:
            return ActionResult(success=False, message=USER_NOT_FOUND)

        with session.lock:
            if session.state != SessionState.SHOPPING:
                return ActionResult(success=False, message="Coupons can only be applied while shopping",
                                    state=session.get_state_name())
            error = check_coupon(code, user, session.cart)
            if error:
                return ActionResult(success=False, message=error, state=session.get_state_name())

            coupon = find_coupon(code)
            self._coupons[session.session_id] = coupon.code
            evaluation = self._evaluate(session)
            self._publish_session(session)

        coupon_name = f"Coupon {coupon.code}"
        applied = evaluation.discounts.get('applied_rules', [])
        saved = sum(a['amount'] for a in applied if a['rule'] == coupon_name)
        return ActionResult(
            success=True,
            message=f"Coupon {coupon.code} applied! You saved ${saved:.2f}",
            cart=session.cart.to_dict(),
            data={'coupon_code': coupon.code, 'discount_amount': saved, 'evaluation': evaluation.to_dict()},
        )

    # Inventory

    def add_product(self, product: Product) -> Product:
        self.events.set_inventory(product)
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.events.get_inventory(product_id)

    def get_all_products(self) -> list[Product]:
        return self.events.get_all_inventory()

    # Rules

    def add_rule(self, rule: Rule) -> Rule:
        with self._rules_lock:
            self.rule_base.add_rule(rule)
            self.events.add_rule(rule.id, rule.to_dict())
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._rules_lock:
            removed = self.rule_base.remove_rule(rule_id)
            if removed is not None:
                self.events.remove_rule(rule_id)
        return removed is not None

    def get_statistics(self) -> dict:
        return {
            'events': self.events.get_statistics(),
            'rule_base': self.rule_base.get_statistics(),
            'sessions': self.session_manager.get_session_stats(),
            'evaluator': self.evaluator.get_statistics(),
        }
