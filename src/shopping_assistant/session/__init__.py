"""Session subpackage - shopping session lifecycle and order persistence."""
from .state_machine import InvalidStateOperation, SessionState, ShoppingSession
from .manager import SessionManager
from .orders import CheckoutData, InMemoryOrderRepository, Order, OrderRepository

__all__ = [
    'InvalidStateOperation', 'SessionState', 'ShoppingSession', 'SessionManager',
    'CheckoutData', 'InMemoryOrderRepository', 'Order', 'OrderRepository',
]
