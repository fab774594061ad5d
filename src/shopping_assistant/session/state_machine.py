"""
Session State Machine - lifecycle of one shopping session.

    Browsing --add--> Shopping --proceed--> Checkout --complete--> Completed
       ^                 |  ^                  |
       +--cart emptied---+  +-----cancel-------+
    any non-terminal state --abandon / timeout--> Abandoned

Operations are looked up in a dispatch table keyed by (state, operation).
A missing entry is a programming error and raises InvalidStateOperation;
business rejections come back as ActionResult(success=False).
"""
import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from ..engine.models import ActionResult, Cart, CartItem, Product, PurchaseRecord
from ..utils.logger import get_logger
from .orders import CheckoutData, Order, OrderRepository

logger = get_logger("session")


class SessionState(str, Enum):
    BROWSING = "Browsing"
    SHOPPING = "Shopping"
    CHECKOUT = "Checkout"
    COMPLETED = "Completed"
    ABANDONED = "Abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABANDONED)


class Operation(str, Enum):
    BROWSE = "browse"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    UPDATE_CART = "update_cart"
    PROCEED_TO_CHECKOUT = "proceed_to_checkout"
    COMPLETE_CHECKOUT = "complete_checkout"
    CANCEL_CHECKOUT = "cancel_checkout"
    ABANDON = "abandon_session"


class InvalidStateOperation(RuntimeError):
    """An operation was invoked in a state that defines no handler for it."""

    def __init__(self, operation: Operation, state: SessionState):
        super().__init__(f"{operation.value}() not allowed in {state.value} state")
        self.operation = operation
        self.state = state


CHECKOUT_LOCKED_MESSAGE = "Cannot modify cart during checkout. Cancel checkout to continue shopping."


def generate_session_id() -> str:
    return f"SESSION-{int(datetime.now().timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"


def generate_order_id() -> str:
    return f"ORD-{int(datetime.now().timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"


class ShoppingSession:
    """
    One user's session: current state, cart, action history and transition
    metadata. Every public operation holds `lock` for its whole duration.
    """

    def __init__(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        order_repository: Optional[OrderRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.user_id = user_id
        self.session_id = session_id or generate_session_id()
        self.order_repository = order_repository
        self.clock = clock
        self.lock = threading.RLock()

        self.state = SessionState.BROWSING
        self.cart: Optional[Cart] = None
        self.history: list[dict] = []
        self.last_order: Optional[Order] = None

        now = clock()
        self.metadata: dict = {
            'start_time': now,
            'last_activity': now,
            'transitions': [],
        }

    # Public operations

    def browse(self, product: Product) -> ActionResult:
        return self._dispatch(Operation.BROWSE, product)

    def add_to_cart(self, item: CartItem) -> ActionResult:
        return self._dispatch(Operation.ADD_TO_CART, item)

    def remove_from_cart(self, product_id: str) -> ActionResult:
        return self._dispatch(Operation.REMOVE_FROM_CART, product_id)

    def update_cart(self, product_id: str, quantity: int) -> ActionResult:
        return self._dispatch(Operation.UPDATE_CART, product_id, quantity)

    def proceed_to_checkout(self) -> ActionResult:
        return self._dispatch(Operation.PROCEED_TO_CHECKOUT)

    def complete_checkout(self, checkout_data: Optional[CheckoutData]) -> ActionResult:
        return self._dispatch(Operation.COMPLETE_CHECKOUT, checkout_data)

    def cancel_checkout(self) -> ActionResult:
        return self._dispatch(Operation.CANCEL_CHECKOUT)

    def abandon_session(self) -> ActionResult:
        return self._dispatch(Operation.ABANDON)

    def abandon_if_inactive(self, timeout: timedelta, now: Optional[datetime] = None) -> bool:
        """
        Abandon the session when it has been idle for at least `timeout`.
        Checked under the session lock, so a concurrent completion wins.
        """
        with self.lock:
            now = now or self.clock()
            if not self.is_active():
                return False
            if now - self.metadata['last_activity'] < timeout:
                return False
            self.history.append({'action': 'TIMEOUT', 'timestamp': now})
            self._transition(SessionState.ABANDONED)
            return True

    # Dispatch

    def _dispatch(self, operation: Operation, *args) -> ActionResult:
        with self.lock:
            handler = _HANDLERS.get((self.state, operation))
            if handler is None:
                raise InvalidStateOperation(operation, self.state)
            result = handler(self, *args)
            if result.success:
                self.metadata['last_activity'] = self.clock()
            return result

    def _transition(self, new_state: SessionState):
        previous = self.state
        now = self.clock()
        self.state = new_state
        self.metadata['transitions'].append({
            'from': previous.value,
            'to': new_state.value,
            'timestamp': now,
        })
        self.metadata['last_activity'] = now
        logger.info(f"[{self.session_id}] {previous.value} -> {new_state.value}")

        # Entry actions
        if new_state == SessionState.SHOPPING and self.cart is None:
            self.cart = Cart(user_id=self.user_id, session_id=self.session_id)
        elif new_state == SessionState.CHECKOUT:
            self.metadata['checkout_start_time'] = now
        elif new_state == SessionState.COMPLETED:
            self.metadata['completed_time'] = now
        elif new_state == SessionState.ABANDONED:
            self.metadata['abandoned_time'] = now

    def _reject(self, message: str) -> ActionResult:
        return ActionResult(success=False, message=message, state=self.state.value)

    def _cart_dict(self) -> Optional[dict]:
        return self.cart.to_dict() if self.cart is not None else None

    # Queries

    def is_active(self) -> bool:
        return not self.state.is_terminal

    def get_state_name(self) -> str:
        return self.state.value

    def get_duration(self) -> timedelta:
        return self.clock() - self.metadata['start_time']

    def to_dict(self) -> dict:
        with self.lock:
            return {
                'user_id': self.user_id,
                'session_id': self.session_id,
                'current_state': self.state.value,
                'duration_seconds': self.get_duration().total_seconds(),
                'transition_count': len(self.metadata['transitions']),
                'is_active': self.is_active(),
                'cart': self._cart_dict(),
                'history_length': len(self.history),
                'start_time': self.metadata['start_time'].isoformat(),
                'last_activity': self.metadata['last_activity'].isoformat(),
                'transitions': [
                    {**t, 'timestamp': t['timestamp'].isoformat()}
                    for t in self.metadata['transitions']
                ],
                'order_id': self.last_order.order_id if self.last_order else None,
            }


# Handlers: (session, *args) -> ActionResult

def _record_view(session: ShoppingSession, product: Product) -> ActionResult:
    session.history.append({'action': 'VIEW', 'product_id': product.id, 'timestamp': session.clock()})
    return ActionResult(success=True, message="Product viewed", data={'product': product.to_dict()})


def _browsing_add(session: ShoppingSession, item: CartItem) -> ActionResult:
    if item.quantity <= 0:
        return session._reject("Quantity must be positive")
    session._transition(SessionState.SHOPPING)
    result = _shopping_add(session, item)
    result.new_state = SessionState.SHOPPING.value
    return result


def _browsing_cart_empty(session: ShoppingSession, *args) -> ActionResult:
    return session._reject("Cart is empty")


def _browsing_checkout(session: ShoppingSession) -> ActionResult:
    return session._reject("Cart is empty. Add items before checkout.")


def _shopping_add(session: ShoppingSession, item: CartItem) -> ActionResult:
    if item.quantity <= 0:
        return session._reject("Quantity must be positive")
    session.cart.add_item(item)
    session.history.append({
        'action': 'ADD_TO_CART',
        'product_id': item.product_id,
        'quantity': item.quantity,
        'timestamp': session.clock(),
    })
    return ActionResult(success=True, message="Item added to cart", cart=session._cart_dict())


def _back_to_browsing_if_empty(session: ShoppingSession, message: str, empty_message: str) -> ActionResult:
    if session.cart.is_empty:
        session._transition(SessionState.BROWSING)
        return ActionResult(success=True, message=empty_message,
                            new_state=SessionState.BROWSING.value, cart=session._cart_dict())
    return ActionResult(success=True, message=message, cart=session._cart_dict())


def _shopping_remove(session: ShoppingSession, product_id: str) -> ActionResult:
    if session.cart.get_item(product_id) is None:
        return session._reject(f"Product {product_id} is not in the cart")
    session.cart.remove_item(product_id)
    session.history.append({'action': 'REMOVE_FROM_CART', 'product_id': product_id, 'timestamp': session.clock()})
    return _back_to_browsing_if_empty(session, "Item removed from cart", "Item removed. Cart is now empty.")


def _shopping_update(session: ShoppingSession, product_id: str, quantity: int) -> ActionResult:
    if session.cart.get_item(product_id) is None:
        return session._reject(f"Product {product_id} is not in the cart")
    session.cart.update_quantity(product_id, quantity)
    session.history.append({
        'action': 'UPDATE_CART',
        'product_id': product_id,
        'quantity': quantity,
        'timestamp': session.clock(),
    })
    return _back_to_browsing_if_empty(session, "Cart updated", "Cart emptied")


def _shopping_checkout(session: ShoppingSession) -> ActionResult:
    if session.cart is None or session.cart.is_empty:
        return session._reject("Cannot checkout with empty cart")
    session._transition(SessionState.CHECKOUT)
    return ActionResult(success=True, message="Proceeding to checkout",
                        new_state=SessionState.CHECKOUT.value, cart=session._cart_dict())


def _checkout_locked(session: ShoppingSession, *args) -> ActionResult:
    return session._reject(CHECKOUT_LOCKED_MESSAGE)


def _checkout_again(session: ShoppingSession) -> ActionResult:
    return session._reject("Already in checkout. Complete or cancel current checkout.")


def _persist_order(session: ShoppingSession, order: Order, records: list[PurchaseRecord]):
    # Best effort: the session stays Completed whatever happens here
    if session.order_repository is None:
        return
    try:
        session.order_repository.save_order(order)
    except Exception:
        logger.exception(f"[{session.session_id}] Error saving order {order.order_id}")
        return
    try:
        session.order_repository.append_purchase_history(session.user_id, records)
    except Exception:
        logger.exception(f"[{session.session_id}] Error updating purchase history for user {session.user_id}")


def _complete_checkout(session: ShoppingSession, checkout_data: Optional[CheckoutData]) -> ActionResult:
    if checkout_data is None:
        return session._reject("Invalid checkout data")
    if checkout_data.missing_fields():
        return session._reject("Missing required billing or payment information")

    cart = session.cart
    order_id = generate_order_id()
    now = session.clock()
    order = Order(
        order_id=order_id,
        user_id=session.user_id,
        session_id=session.session_id,
        items=[item.to_dict() for item in cart.items],
        billing_info=checkout_data.billing_info(),
        last_four_digits=checkout_data.card_number[-4:],
        subtotal=cart.subtotal,
        discount=cart.total_discount,
        total=cart.total,
        created_at=now,
    )
    records = [
        PurchaseRecord(
            order_id=order_id,
            product_id=item.product_id,
            name=item.name,
            category=item.category,
            price=item.price,
            tags=list(item.tags),
            purchase_date=now,
        )
        for item in cart.items
    ]

    session.metadata['order_id'] = order_id
    session.metadata['billing_info'] = order.billing_info
    session.metadata['payment_method'] = order.payment_method
    session.last_order = order

    _persist_order(session, order, records)

    session.history.append({'action': 'CHECKOUT_COMPLETED', 'order_id': order_id,
                            'total': cart.total, 'timestamp': now})
    session._transition(SessionState.COMPLETED)
    return ActionResult(
        success=True,
        message="Checkout completed successfully",
        new_state=SessionState.COMPLETED.value,
        cart=session._cart_dict(),
        data={'order_id': order_id, 'total': cart.total},
    )


def _cancel_checkout(session: ShoppingSession) -> ActionResult:
    session.history.append({'action': 'CHECKOUT_CANCELLED', 'timestamp': session.clock()})
    session._transition(SessionState.SHOPPING)
    return ActionResult(success=True, message="Checkout cancelled. Returned to shopping.",
                        new_state=SessionState.SHOPPING.value, cart=session._cart_dict())


def _abandon(session: ShoppingSession) -> ActionResult:
    session.history.append({'action': 'ABANDON', 'timestamp': session.clock()})
    session._transition(SessionState.ABANDONED)
    return ActionResult(success=True, message="Session abandoned", new_state=SessionState.ABANDONED.value)


def _rejecting(message: str) -> Callable[..., ActionResult]:
    def handler(session: ShoppingSession, *args) -> ActionResult:
        return session._reject(message)
    return handler


COMPLETED_MESSAGES = {
    Operation.BROWSE: "Session completed. Start a new session to continue shopping.",
    Operation.ADD_TO_CART: "Session completed. Start a new session to continue shopping.",
    Operation.REMOVE_FROM_CART: "Session completed. Cannot modify completed order.",
    Operation.UPDATE_CART: "Session completed. Cannot modify completed order.",
    Operation.PROCEED_TO_CHECKOUT: "Session already completed.",
    Operation.COMPLETE_CHECKOUT: "Session already completed.",
    Operation.CANCEL_CHECKOUT: "Session already completed.",
    Operation.ABANDON: "Cannot abandon completed session.",
}

ABANDONED_MESSAGES = {
    **{op: "Session abandoned. Start a new session to continue." for op in Operation},
    Operation.ABANDON: "Session already abandoned.",
}


_HANDLERS: dict[tuple[SessionState, Operation], Callable[..., ActionResult]] = {
    (SessionState.BROWSING, Operation.BROWSE): _record_view,
    (SessionState.BROWSING, Operation.ADD_TO_CART): _browsing_add,
    (SessionState.BROWSING, Operation.REMOVE_FROM_CART): _browsing_cart_empty,
    (SessionState.BROWSING, Operation.UPDATE_CART): _browsing_cart_empty,
    (SessionState.BROWSING, Operation.PROCEED_TO_CHECKOUT): _browsing_checkout,
    (SessionState.BROWSING, Operation.ABANDON): _abandon,

    (SessionState.SHOPPING, Operation.BROWSE): _record_view,
    (SessionState.SHOPPING, Operation.ADD_TO_CART): _shopping_add,
    (SessionState.SHOPPING, Operation.REMOVE_FROM_CART): _shopping_remove,
    (SessionState.SHOPPING, Operation.UPDATE_CART): _shopping_update,
    (SessionState.SHOPPING, Operation.PROCEED_TO_CHECKOUT): _shopping_checkout,
    (SessionState.SHOPPING, Operation.ABANDON): _abandon,

    (SessionState.CHECKOUT, Operation.BROWSE): _record_view,
    (SessionState.CHECKOUT, Operation.ADD_TO_CART): _checkout_locked,
    (SessionState.CHECKOUT, Operation.REMOVE_FROM_CART): _checkout_locked,
    (SessionState.CHECKOUT, Operation.UPDATE_CART): _checkout_locked,
    (SessionState.CHECKOUT, Operation.PROCEED_TO_CHECKOUT): _checkout_again,
    (SessionState.CHECKOUT, Operation.COMPLETE_CHECKOUT): _complete_checkout,
    (SessionState.CHECKOUT, Operation.CANCEL_CHECKOUT): _cancel_checkout,
    (SessionState.CHECKOUT, Operation.ABANDON): _abandon,

    **{(SessionState.COMPLETED, op): _rejecting(msg) for op, msg in COMPLETED_MESSAGES.items()},
    **{(SessionState.ABANDONED, op): _rejecting(msg) for op, msg in ABANDONED_MESSAGES.items()},
}
