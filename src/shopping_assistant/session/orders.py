"""
Orders - checkout data, completed orders and where they are persisted.

Persistence is a side channel of checkout: repositories may raise, and the
session logs the failure without undoing the transition.
"""
import csv
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from ..engine.models import PurchaseRecord


@dataclass
class CheckoutData:
    """Billing and payment details submitted with complete_checkout."""
    name: str = ""
    email: str = ""
    card_number: str = ""
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None

    def missing_fields(self) -> list[str]:
        required = {'name': self.name, 'email': self.email, 'card_number': self.card_number}
        return [key for key, value in required.items() if not value]

    def billing_info(self) -> dict:
        return {
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'city': self.city,
            'postal_code': self.postal_code,
        }


@dataclass
class Order:
    """A confirmed order. Only the last four card digits are kept."""
    order_id: str
    user_id: str
    session_id: str
    items: list[dict]
    billing_info: dict
    last_four_digits: str
    subtotal: float
    discount: float
    total: float
    payment_method: str = "Credit Card"
    status: str = "confirmed"
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'items': list(self.items),
            'billing_info': dict(self.billing_info),
            'payment_info': {
                'method': self.payment_method,
                'last_four_digits': self.last_four_digits,
            },
            'subtotal': self.subtotal,
            'discount': self.discount,
            'total': self.total,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
        }

    def to_csv_row(self) -> dict:
        return {
            'order_id': self.order_id,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'items': json.dumps(self.items),
            'customer_name': self.billing_info.get('name') or '',
            'customer_email': self.billing_info.get('email') or '',
            'last_four_digits': self.last_four_digits,
            'subtotal': f"{self.subtotal:.2f}",
            'discount': f"{self.discount:.2f}",
            'total': f"{self.total:.2f}",
            'status': self.status,
            'created_at': self.created_at.isoformat(),
        }


class OrderRepository(Protocol):
    def save_order(self, order: Order) -> None: ...

    def append_purchase_history(self, user_id: str, records: list[PurchaseRecord]) -> None: ...


class InMemoryOrderRepository:
    """Default repository: orders and purchase history kept in process memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.orders: dict[str, Order] = {}
        self.purchase_history: dict[str, list[PurchaseRecord]] = {}

    def save_order(self, order: Order) -> None:
        with self._lock:
            self.orders[order.order_id] = order

    def append_purchase_history(self, user_id: str, records: list[PurchaseRecord]) -> None:
        with self._lock:
            self.purchase_history.setdefault(user_id, []).extend(records)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    def get_orders_for_user(self, user_id: str) -> list[Order]:
        return [o for o in self.orders.values() if o.user_id == user_id]


class CsvOrderRepository:
    """
    Append-only CSV persistence.

    Orders go to `orders_csv`; purchase history lines go to a sibling file
    named `<stem>_history.csv`. Headers are written when a file is created.
    """

    ORDER_COLUMNS = [
        'order_id', 'user_id', 'session_id', 'items', 'customer_name', 'customer_email',
        'last_four_digits', 'subtotal', 'discount', 'total', 'status', 'created_at'
    ]

    HISTORY_COLUMNS = [
        'user_id', 'order_id', 'product_id', 'name', 'category', 'tags', 'price', 'purchase_date'
    ]

    def __init__(self, orders_csv: Path):
        self.orders_csv = Path(orders_csv)
        self.history_csv = self.orders_csv.with_name(f"{self.orders_csv.stem}_history.csv")
        self._lock = threading.Lock()

    def _append(self, path: Path, columns: list[str], rows: list[dict]):
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not path.exists()
            with open(path, 'a', encoding='utf-8', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=columns)
                if new_file:
                    writer.writeheader()
                for row in rows:
                    writer.writerow(row)

    def save_order(self, order: Order) -> None:
        self._append(self.orders_csv, self.ORDER_COLUMNS, [order.to_csv_row()])

    def append_purchase_history(self, user_id: str, records: list[PurchaseRecord]) -> None:
        rows = [
            {
                'user_id': user_id,
                'order_id': r.order_id,
                'product_id': r.product_id,
                'name': r.name,
                'category': r.category,
                'tags': '|'.join(r.tags),
                'price': f"{r.price:.2f}",
                'purchase_date': r.purchase_date.isoformat(),
            }
            for r in records
        ]
        self._append(self.history_csv, self.HISTORY_COLUMNS, rows)

    def list_orders(self) -> list[dict]:
        if not self.orders_csv.exists():
            return []
        with open(self.orders_csv, 'r', encoding='utf-8') as f:
            reader = csv.DictReader(f)
            return [row for row in reader if row.get('order_id')]
