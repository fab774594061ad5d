"""
End-to-end behaviour of ShoppingAssistantService over the seed catalog and rules.
"""
import logging

import pytest

from shopping_assistant.engine import Product, UserProfile
from shopping_assistant.engine.rule_base import ActionType, Rule, RuleAction
from shopping_assistant.engine.rule_parser import RuleParser
from shopping_assistant.services.assistant_service import SESSION_NOT_FOUND, ShoppingAssistantService
from shopping_assistant.services.event_store import EventType
from shopping_assistant.session import CheckoutData, InvalidStateOperation, SessionState
from shopping_assistant.session.orders import CsvOrderRepository, InMemoryOrderRepository
from shopping_assistant.utils.logger import get_logger

CHECKOUT = CheckoutData(name="Ada Lovelace", email="ada@example.com", card_number="4111111111111111")


def start(service, user_id="u1", user=None):
    return service.start_session(user_id, user).data['session_id']


def test_create_loads_seed_data(settings):
    service = ShoppingAssistantService.create(settings)
    assert len(service.get_all_products()) == 15
    assert len(service.rule_base) == 7
    assert isinstance(service.order_repository, InMemoryOrderRepository)


def test_start_session_registers_unknown_user(service):
    result = service.start_session("newcomer")
    assert result.success
    assert result.state == "Browsing"
    assert result.data['user']['id'] == "newcomer"
    assert service.get_user("newcomer") is not None


def test_unknown_session_and_product(service):
    assert service.add_to_cart("SESSION-missing", "P001").message == SESSION_NOT_FOUND
    session_id = start(service)
    result = service.add_to_cart(session_id, "NOPE")
    assert not result.success
    assert result.message == "Product NOPE not found"


def test_add_to_cart_evaluates(service):
    session_id = start(service)
    result = service.add_to_cart(session_id, "P002")

    assert result.success
    assert result.new_state == "Shopping"
    evaluation = result.data['evaluation']
    assert evaluation['fired_rules'] == ["BIG-CART", "FREE-SHIP", "PHONE-CASE"]
    assert evaluation['variables'] == {'high_value_cart': True, 'free_shipping': True}
    # 10% high value cart (69.90) and the $50 New Year special
    assert evaluation['discounts']['total_discount'] == pytest.approx(119.9)
    assert evaluation['totals']['subtotal'] == pytest.approx(579.1)
    assert any(r['product'] == "P005" for r in evaluation['recommendations'])
    assert result.cart['total'] == pytest.approx(579.1)


def test_repeated_evaluation_does_not_compound(service):
    session_id = start(service)
    service.add_to_cart(session_id, "P002")
    first = service.evaluate_cart(session_id).data['evaluation']
    second = service.evaluate_cart(session_id).data['evaluation']
    assert first['discounts']['total_discount'] == second['discounts']['total_discount']
    assert second['totals']['subtotal'] == pytest.approx(579.1)


def test_cart_edits_keep_evaluation_current(service):
    session_id = start(service)
    service.add_to_cart(session_id, "P014")
    result = service.update_cart_item(session_id, "P014", 3)
    assert result.cart['item_count'] == 3
    assert result.data['evaluation']['totals']['original_subtotal'] == pytest.approx(37.5)

    result = service.remove_from_cart(session_id, "P014")
    assert result.new_state == "Browsing"
    assert 'evaluation' not in result.data


def test_student_session_rules_and_discounts(service):
    session_id = start(service, "stu", UserProfile(id="stu", name="Sam", is_student=True))
    result = service.add_to_cart(session_id, "P015")
    evaluation = result.data['evaluation']

    assert evaluation['fired_rules'][0] == "STUDENT-FLAG"
    assert "STUDENT-SUPPLIES" in evaluation['fired_rules']
    assert evaluation['variables']['segment'] == "student"
    # 15% student discount on 45.00
    assert evaluation['discounts']['total_discount'] == pytest.approx(6.75)
    assert all(r.get('student_discount') for r in evaluation['recommendations'] if isinstance(r['product'], dict))


def test_coupon_flow(service):
    session_id = start(service)
    assert service.apply_coupon(session_id, "NEWYEAR25").message == "Coupons can only be applied while shopping"

    service.add_to_cart(session_id, "P014")
    assert service.apply_coupon(session_id, "NEWYEAR25").message == "Minimum purchase of $100 required"
    assert not service.apply_coupon(session_id, "BOGUS").success

    service.add_to_cart(session_id, "P008")
    result = service.apply_coupon(session_id, "tech20")
    assert result.success
    assert result.data['coupon_code'] == "TECH20"
    assert result.data['discount_amount'] == pytest.approx(39.8)
    assert result.message == "Coupon TECH20 applied! You saved $39.80"

    # the coupon stays applied on later evaluations without stacking
    evaluation = service.evaluate_cart(session_id).data['evaluation']
    coupon_lines = [a for a in evaluation['discounts']['applied_rules'] if a['rule'] == "Coupon TECH20"]
    assert len(coupon_lines) == 1


def test_emptying_the_cart_drops_the_coupon(service):
    session_id = start(service)
    service.add_to_cart(session_id, "P008")
    assert service.apply_coupon(session_id, "TECH20").success
    service.remove_from_cart(session_id, "P008")

    result = service.add_to_cart(session_id, "P008")
    rules = [a['rule'] for a in result.data['evaluation']['discounts']['applied_rules']]
    assert "Coupon TECH20" not in rules


def test_checkout_flow_records_purchases(service):
    session_id = start(service)
    assert [c['code'] for c in service.get_available_coupons("u1").data['coupons']][-1] == "FIRSTBUY"

    service.add_to_cart(session_id, "P001", quantity=2)
    assert service.proceed_to_checkout(session_id).new_state == "Checkout"
    assert not service.add_to_cart(session_id, "P004").success

    result = service.complete_checkout(session_id, CHECKOUT)
    assert result.success
    order = service.order_repository.get_order(result.data['order_id'])
    assert order.items[0]['quantity'] == 2

    user = service.get_user("u1")
    assert [p.product_id for p in user.purchase_history] == ["P001"]
    assert "FIRSTBUY" not in [c['code'] for c in service.get_available_coupons("u1").data['coupons']]
    assert service.session_manager.get_session(session_id).state == SessionState.COMPLETED


def test_state_errors_propagate(service):
    session_id = start(service)
    service.add_to_cart(session_id, "P001")
    with pytest.raises(InvalidStateOperation):
        service.complete_checkout(session_id, CHECKOUT)
    with pytest.raises(InvalidStateOperation):
        service.cancel_checkout(session_id)


def test_cancel_and_abandon(service):
    session_id = start(service)
    service.add_to_cart(session_id, "P001")
    service.proceed_to_checkout(session_id)
    assert service.cancel_checkout(session_id).new_state == "Shopping"
    assert service.abandon_session(session_id).new_state == "Abandoned"
    assert service.events.get_session(session_id)['current_state'] == "Abandoned"


def test_browsing_feeds_recommendations(service):
    session_id = start(service)
    assert service.browse(session_id, "P006").success
    assert service.get_user("u1").browsing_history[0]['category'] == "peripherals"

    recommendations = service.get_recommendations("u1").data['recommendations']
    reasons = {r['product']['id']: r['reason'] for r in recommendations}
    assert reasons["P006"] == "Based on your browsing history"
    assert reasons["P007"] == "Based on your browsing history"
    assert service.events.get_recommendations("u1") is not None
    assert not service.get_recommendations("nobody").success


def test_inactive_sessions_time_out(service, clock):
    idle = start(service, "idle")
    busy = start(service, "busy")
    clock.advance(minutes=20)
    service.add_to_cart(busy, "P001")
    clock.advance(minutes=15)

    assert service.session_manager.sweep_timeouts() == [idle]
    assert service.get_session(busy).state == "Shopping"


def test_rules_can_be_added_and_removed_live(service):
    session_id = start(service)
    service.add_rule(Rule(
        id="PAPER-LOVER", name="Paper lover", priority=5,
        condition=RuleParser.parse("cart.stationery.count >= 1"),
        action=RuleAction(type=ActionType.SET_VARIABLE, variable="paper", value=True),
    ))
    result = service.add_to_cart(session_id, "P014")
    assert result.data['evaluation']['variables']['paper'] is True

    assert service.remove_rule("PAPER-LOVER")
    assert not service.remove_rule("PAPER-LOVER")
    evaluation = service.evaluate_cart(session_id).data['evaluation']
    assert 'paper' not in evaluation['variables']
    assert service.events.get_rule("PAPER-LOVER")['active'] is False


def test_orders_written_to_csv(settings, tmp_path):
    settings.orders_csv = tmp_path / "orders.csv"
    service = ShoppingAssistantService(settings)
    service.add_product(Product(id="X1", name="Widget", price=12.0, stock=5, category="gadgets"))
    assert isinstance(service.order_repository, CsvOrderRepository)

    session_id = start(service)
    service.add_to_cart(session_id, "X1")
    service.proceed_to_checkout(session_id)
    result = service.complete_checkout(session_id, CHECKOUT)

    rows = service.order_repository.list_orders()
    assert [r['order_id'] for r in rows] == [result.data['order_id']]
    assert rows[0]['last_four_digits'] == "1111"
    assert "4111111111111111" not in settings.orders_csv.read_text(encoding="utf-8")
    assert (tmp_path / "orders_history.csv").exists()


def test_statistics(service):
    start(service)
    stats = service.get_statistics()
    assert stats['sessions']['total'] == 1
    assert stats['rule_base']['total_rules'] == 7
    assert stats['events']['total_products'] == 15
    assert [e['name'] for e in stats['evaluator']['evaluators']] == [
        "RuleInterpreter", "DiscountCalculator", "InventoryChecker", "PersonalizationEngine", "CartOptimizer"
    ]


def test_create_applies_the_configured_log_level(settings):
    settings.log_level = "warning"
    try:
        ShoppingAssistantService.create(settings)
        assert get_logger().level == logging.WARNING
    finally:
        settings.log_level = "INFO"
        ShoppingAssistantService.create(settings)
    assert get_logger().level == logging.INFO


def test_evaluation_includes_cart_analytics(service):
    session_id = start(service)
    service.add_to_cart(session_id, "P014", quantity=3)

    analytics = service.evaluate_cart(session_id).data['analytics']

    assert analytics['total_items'] == 3
    assert analytics['category_distribution'] == {'stationery': 3}


def test_timeout_updates_the_session_projection(service, clock):
    session_id = start(service)
    service.add_to_cart(session_id, "P008")
    assert service.apply_coupon(session_id, "TECH20").success
    clock.advance(minutes=45)

    assert service.sweep_sessions()['abandoned'] == [session_id]

    projected = service.events.get_session(session_id)
    assert projected['current_state'] == "Abandoned"
    assert projected['is_active'] is False
    assert service.get_statistics()['events']['active_sessions'] == 0
    assert session_id not in service._coupons


def test_sweep_forgets_finished_sessions_and_trims_the_log(service, clock):
    service.settings.max_event_log = 10
    session_id = start(service)
    service.add_to_cart(session_id, "P001")
    service.abandon_session(session_id)

    clock.advance(minutes=30)
    assert service.sweep_sessions()['evicted'] == []

    clock.advance(minutes=31)
    result = service.sweep_sessions()

    assert result['evicted'] == [session_id]
    assert result['compacted_events'] > 0
    assert service.session_manager.get_session(session_id) is None
    assert service.events.get_session(session_id) is None
    assert session_id in [e.key for e in service.events.events(event_type=EventType.SESSION_REMOVED)]
    assert len(service.events.events()) == 10
    assert len(service.get_all_products()) == 15
    assert service.get_user("u1") is not None
