import pytest

from shopping_assistant.engine import Product
from shopping_assistant.session import (
    CheckoutData,
    InMemoryOrderRepository,
    InvalidStateOperation,
    SessionState,
    ShoppingSession,
)
from shopping_assistant.session.state_machine import CHECKOUT_LOCKED_MESSAGE

from conftest import make_item

CHECKOUT = CheckoutData(name="Ada Lovelace", email="ada@example.com", card_number="4111111111111111")


@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def session(repository, clock):
    return ShoppingSession("u1", order_repository=repository, clock=clock)


def in_checkout(session):
    session.add_to_cart(make_item("P1", 40.0, quantity=2))
    session.proceed_to_checkout()
    return session


def test_new_session_starts_browsing(session):
    assert session.state == SessionState.BROWSING
    assert session.session_id.startswith("SESSION-")
    assert session.cart is None
    assert session.is_active()


def test_add_then_remove_returns_to_browsing(session):
    result = session.add_to_cart(make_item("P1", 10.0))
    assert result.success
    assert result.new_state == "Shopping"
    assert session.state == SessionState.SHOPPING

    result = session.remove_from_cart("P1")
    assert result.success
    assert result.message == "Item removed. Cart is now empty."
    assert session.state == SessionState.BROWSING
    assert [t["to"] for t in session.metadata["transitions"]] == ["Shopping", "Browsing"]


def test_checkout_with_empty_cart_is_rejected(session):
    result = session.proceed_to_checkout()
    assert not result.success
    assert result.message == "Cart is empty. Add items before checkout."
    assert session.state == SessionState.BROWSING


def test_browsing_cart_edits_are_rejected(session):
    assert session.remove_from_cart("P1").message == "Cart is empty"
    assert session.update_cart("P1", 2).message == "Cart is empty"
    assert session.state == SessionState.BROWSING


def test_non_positive_quantity_rejected(session):
    result = session.add_to_cart(make_item("P1", 10.0, quantity=0))
    assert not result.success
    assert session.state == SessionState.BROWSING


def test_shopping_cart_edits(session):
    session.add_to_cart(make_item("P1", 10.0))
    session.add_to_cart(make_item("P1", 10.0, quantity=2))
    session.add_to_cart(make_item("P2", 5.0))
    assert session.cart.get_item("P1").quantity == 3

    assert session.update_cart("P1", 1).message == "Cart updated"
    assert session.update_cart("P9", 1).message == "Product P9 is not in the cart"
    assert session.remove_from_cart("P9").message == "Product P9 is not in the cart"

    session.remove_from_cart("P2")
    result = session.update_cart("P1", 0)
    assert result.message == "Cart emptied"
    assert session.state == SessionState.BROWSING


def test_checkout_locks_the_cart(session):
    in_checkout(session)
    assert session.state == SessionState.CHECKOUT

    for result in (
        session.add_to_cart(make_item("P2", 5.0)),
        session.remove_from_cart("P1"),
        session.update_cart("P1", 5),
    ):
        assert not result.success
        assert result.message == CHECKOUT_LOCKED_MESSAGE
    assert session.cart.get_item("P1").quantity == 2
    assert session.proceed_to_checkout().message == "Already in checkout. Complete or cancel current checkout."


def test_browsing_is_allowed_during_checkout(session):
    in_checkout(session)
    result = session.browse(Product(id="P7", name="Mouse", price=20.0))
    assert result.success
    assert session.state == SessionState.CHECKOUT


def test_cancel_checkout_returns_to_shopping(session):
    in_checkout(session)
    result = session.cancel_checkout()
    assert result.success
    assert session.state == SessionState.SHOPPING
    assert session.cart.get_item("P1") is not None


def test_complete_checkout_requires_billing_data(session):
    in_checkout(session)
    assert session.complete_checkout(None).message == "Invalid checkout data"
    result = session.complete_checkout(CheckoutData(name="Ada", email="ada@example.com"))
    assert result.message == "Missing required billing or payment information"
    assert session.state == SessionState.CHECKOUT


def test_complete_checkout_persists_order(session, repository):
    in_checkout(session)
    result = session.complete_checkout(CHECKOUT)

    assert result.success
    assert result.data["order_id"].startswith("ORD-")
    assert result.data["total"] == pytest.approx(80.0)
    assert session.state == SessionState.COMPLETED
    assert not session.is_active()

    order = repository.get_order(result.data["order_id"])
    assert order.last_four_digits == "1111"
    assert order.to_dict()["payment_info"] == {"method": "Credit Card", "last_four_digits": "1111"}
    assert "card_number" not in order.billing_info
    assert [r.product_id for r in repository.purchase_history["u1"]] == ["P1"]


def test_persistence_failure_keeps_session_completed(clock):
    """Saving is best effort: the order lives on the session even if the repository fails."""
    class BrokenRepository:
        def save_order(self, order):
            raise IOError("disk full")

        def append_purchase_history(self, user_id, records):
            raise AssertionError("history must not be written when the order was not")

    session = ShoppingSession("u1", order_repository=BrokenRepository(), clock=clock)
    in_checkout(session)
    result = session.complete_checkout(CHECKOUT)

    assert result.success
    assert session.state == SessionState.COMPLETED
    assert session.last_order is not None


@pytest.mark.parametrize("operation", ["complete", "cancel"])
def test_checkout_only_operations_raise_outside_checkout(session, operation):
    calls = {"complete": lambda: session.complete_checkout(CHECKOUT), "cancel": session.cancel_checkout}
    with pytest.raises(InvalidStateOperation, match="not allowed in Browsing state"):
        calls[operation]()

    session.add_to_cart(make_item("P1", 10.0))
    with pytest.raises(InvalidStateOperation) as exc:
        calls[operation]()
    assert exc.value.state == SessionState.SHOPPING


def test_completed_session_rejects_everything(session):
    in_checkout(session)
    session.complete_checkout(CHECKOUT)

    assert session.add_to_cart(make_item("P2", 5.0)).message.startswith("Session completed")
    assert session.remove_from_cart("P1").message == "Session completed. Cannot modify completed order."
    assert session.cancel_checkout().message == "Session already completed."
    assert session.abandon_session().message == "Cannot abandon completed session."
    assert session.state == SessionState.COMPLETED


def test_abandoned_session_rejects_everything(session):
    session.add_to_cart(make_item("P1", 10.0))
    assert session.abandon_session().success
    assert session.state == SessionState.ABANDONED

    assert not session.add_to_cart(make_item("P2", 5.0)).success
    assert not session.proceed_to_checkout().success
    assert session.abandon_session().message == "Session already abandoned."


def test_timeout_abandons_idle_session(session, clock):
    from datetime import timedelta

    session.add_to_cart(make_item("P1", 10.0))
    clock.advance(minutes=10)
    assert not session.abandon_if_inactive(timedelta(minutes=30))

    clock.advance(minutes=25)
    session.browse(Product(id="P2", name="Thing", price=1.0))
    clock.advance(minutes=29)
    assert not session.abandon_if_inactive(timedelta(minutes=30))

    clock.advance(minutes=1)
    assert session.abandon_if_inactive(timedelta(minutes=30))
    assert session.state == SessionState.ABANDONED
    assert session.history[-1]["action"] == "TIMEOUT"


def test_to_dict(session):
    session.add_to_cart(make_item("P1", 10.0))
    data = session.to_dict()
    assert data["current_state"] == "Shopping"
    assert data["transition_count"] == 1
    assert data["cart"]["item_count"] == 1
    assert data["order_id"] is None
