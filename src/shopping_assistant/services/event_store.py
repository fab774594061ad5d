"""
Event Store - shared knowledge of the assistant as an append-only event log.

Every write is a typed DomainEvent carrying a snapshot of its payload, so
later changes to the caller's objects never rewrite history. The read side
(users, carts, sessions, inventory, rules, recommendations) is folded from
those events only; `compact` drops old events once they are folded in.
Subscribers are notified after each append; a failing subscriber is logged
and skipped.
"""
import copy
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from ..engine.models import Product, UserProfile
from ..utils.logger import get_logger

logger = get_logger("services.event_store")


class EventType(str, Enum):
    USER_UPDATED = "USER_UPDATED"
    CART_UPDATED = "CART_UPDATED"
    SESSION_UPDATED = "SESSION_UPDATED"
    SESSION_REMOVED = "SESSION_REMOVED"
    INVENTORY_UPDATED = "INVENTORY_UPDATED"
    RULE_ADDED = "RULE_ADDED"
    RULE_REMOVED = "RULE_REMOVED"
    RECOMMENDATIONS_UPDATED = "RECOMMENDATIONS_UPDATED"
    RECOMMENDATIONS_CLEARED = "RECOMMENDATIONS_CLEARED"


@dataclass(frozen=True)
class DomainEvent:
    sequence: int
    type: EventType
    key: str
    payload: Any = None
    timestamp: datetime = field(default_factory=datetime.now)


Subscriber = Callable[[DomainEvent], None]


@dataclass
class Projections:
    """Read models derived from the event log."""
    users: dict[str, UserProfile] = field(default_factory=dict)
    carts: dict[str, dict] = field(default_factory=dict)
    sessions: dict[str, dict] = field(default_factory=dict)
    inventory: dict[str, Product] = field(default_factory=dict)
    rules: dict[str, dict] = field(default_factory=dict)
    recommendations: dict[str, dict] = field(default_factory=dict)


def _project_user(p: Projections, e: DomainEvent):
    p.users[e.key] = e.payload


def _project_cart(p: Projections, e: DomainEvent):
    p.carts[e.key] = {**e.payload, 'updated_at': e.timestamp}


def _project_session(p: Projections, e: DomainEvent):
    p.sessions[e.key] = {**e.payload, 'updated_at': e.timestamp}


def _project_session_removed(p: Projections, e: DomainEvent):
    p.sessions.pop(e.key, None)


def _project_inventory(p: Projections, e: DomainEvent):
    p.inventory[e.key] = e.payload


def _project_rule_added(p: Projections, e: DomainEvent):
    p.rules[e.key] = {**e.payload, 'created_at': e.timestamp, 'active': True}


def _project_rule_removed(p: Projections, e: DomainEvent):
    if e.key in p.rules:
        p.rules[e.key] = {**p.rules[e.key], 'active': False}


def _project_recommendations(p: Projections, e: DomainEvent):
    p.recommendations[e.key] = {'items': list(e.payload), 'generated_at': e.timestamp}


def _project_recommendations_cleared(p: Projections, e: DomainEvent):
    p.recommendations.pop(e.key, None)


PROJECTORS: dict[EventType, Callable[[Projections, DomainEvent], None]] = {
    EventType.USER_UPDATED: _project_user,
    EventType.CART_UPDATED: _project_cart,
    EventType.SESSION_UPDATED: _project_session,
    EventType.SESSION_REMOVED: _project_session_removed,
    EventType.INVENTORY_UPDATED: _project_inventory,
    EventType.RULE_ADDED: _project_rule_added,
    EventType.RULE_REMOVED: _project_rule_removed,
    EventType.RECOMMENDATIONS_UPDATED: _project_recommendations,
    EventType.RECOMMENDATIONS_CLEARED: _project_recommendations_cleared,
}


class EventStore:
    """Append-only event log with in-memory projections."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._lock = threading.RLock()
        self._events: list[DomainEvent] = []
        self._sequence = 0
        self._subscribers: list[Subscriber] = []
        self.projections = Projections()
        self.created_at = clock()

    # Write side

    def append(self, event_type: EventType, key: str, payload: Any = None) -> DomainEvent:
        with self._lock:
            self._sequence += 1
            event = DomainEvent(
                sequence=self._sequence,
                type=event_type,
                key=key,
                payload=copy.deepcopy(payload),
                timestamp=self.clock(),
            )
            self._events.append(event)
            # projections get their own copy; readers must not reach into the log
            PROJECTORS[event_type](self.projections, replace(event, payload=copy.deepcopy(event.payload)))
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(f"Subscriber {getattr(subscriber, '__name__', subscriber)} failed on {event_type.value}")
        return event

    def subscribe(self, subscriber: Subscriber):
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber):
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def events(self, since: int = 0, event_type: Optional[EventType] = None) -> list[DomainEvent]:
        """Retained events with sequence greater than `since`, optionally of one type."""
        with self._lock:
            return [
                e for e in self._events
                if e.sequence > since and (event_type is None or e.type == event_type)
            ]

    def compact(self, max_events: int) -> int:
        """Keep only the newest `max_events` events. Returns how many were dropped."""
        with self._lock:
            dropped = max(len(self._events) - max_events, 0)
            if dropped:
                del self._events[:dropped]
        if dropped:
            logger.info(f"Compacted event log: dropped {dropped} events")
        return dropped

    # Users

    def set_user(self, user: UserProfile) -> DomainEvent:
        return self.append(EventType.USER_UPDATED, user.id, user)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.projections.users.get(user_id)

    # Carts (keyed by user)

    def set_cart(self, user_id: str, cart_data: dict) -> DomainEvent:
        return self.append(EventType.CART_UPDATED, user_id, cart_data)

    def get_cart(self, user_id: str) -> Optional[dict]:
        return self.projections.carts.get(user_id)

    # Sessions

    def set_session(self, session_id: str, session_data: dict) -> DomainEvent:
        return self.append(EventType.SESSION_UPDATED, session_id, session_data)

    def get_session(self, session_id: str) -> Optional[dict]:
        return self.projections.sessions.get(session_id)

    def remove_session(self, session_id: str) -> DomainEvent:
        return self.append(EventType.SESSION_REMOVED, session_id)

    # Inventory

    def set_inventory(self, product: Product) -> DomainEvent:
        return self.append(EventType.INVENTORY_UPDATED, product.id, product)

    def get_inventory(self, product_id: str) -> Optional[Product]:
        return self.projections.inventory.get(product_id)

    def get_all_inventory(self) -> list[Product]:
        with self._lock:
            return list(self.projections.inventory.values())

    # Rules

    def add_rule(self, rule_id: str, rule_data: dict) -> DomainEvent:
        return self.append(EventType.RULE_ADDED, rule_id, rule_data)

    def get_rule(self, rule_id: str) -> Optional[dict]:
        return self.projections.rules.get(rule_id)

    def get_all_rules(self) -> list[dict]:
        """Active rule records."""
        with self._lock:
            return [r for r in self.projections.rules.values() if r['active']]

    def remove_rule(self, rule_id: str) -> Optional[DomainEvent]:
        if rule_id not in self.projections.rules:
            return None
        return self.append(EventType.RULE_REMOVED, rule_id)

    # Recommendations

    def set_recommendations(self, user_id: str, recommendations: list[dict]) -> DomainEvent:
        return self.append(EventType.RECOMMENDATIONS_UPDATED, user_id, recommendations)

    def get_recommendations(self, user_id: str) -> Optional[dict]:
        return self.projections.recommendations.get(user_id)

    def clear_recommendations(self, user_id: str) -> DomainEvent:
        return self.append(EventType.RECOMMENDATIONS_CLEARED, user_id)

    # Queries

    def active_sessions(self) -> list[dict]:
        with self._lock:
            return [s for s in self.projections.sessions.values() if s.get('is_active')]

    def low_stock(self, threshold: int = 10) -> list[Product]:
        return [p for p in self.get_all_inventory() if p.stock < threshold]

    def category_products(self, category: str) -> list[Product]:
        return [p for p in self.get_all_inventory() if p.category == category]

    def cleanup(self, max_age: timedelta = timedelta(hours=24), now: Optional[datetime] = None) -> int:
        """
        Remove inactive sessions and recommendations not updated within
        `max_age`. Removals are appended as events; returns how many.
        """
        now = now or self.clock()
        with self._lock:
            stale_sessions = [
                session_id for session_id, session in self.projections.sessions.items()
                if now - session['updated_at'] > max_age and not session.get('is_active')
            ]
            stale_recommendations = [
                user_id for user_id, rec in self.projections.recommendations.items()
                if now - rec['generated_at'] > max_age
            ]

        for session_id in stale_sessions:
            self.remove_session(session_id)
        for user_id in stale_recommendations:
            self.clear_recommendations(user_id)
        return len(stale_sessions) + len(stale_recommendations)

    def get_statistics(self) -> dict:
        with self._lock:
            last = self._events[-1].timestamp if self._events else self.created_at
            return {
                'total_users': len(self.projections.users),
                'active_carts': len(self.projections.carts),
                'active_sessions': len(self.active_sessions()),
                'total_products': len(self.projections.inventory),
                'active_rules': len(self.get_all_rules()),
                'total_events': self._sequence,
                'retained_events': len(self._events),
                'last_update': last.isoformat(),
            }
