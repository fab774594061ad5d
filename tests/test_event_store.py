from datetime import datetime, timedelta

from shopping_assistant.engine import Product, UserProfile
from shopping_assistant.services.event_store import EventStore, EventType


def test_writes_are_events_and_projections_follow():
    store = EventStore()
    store.set_user(UserProfile(id="u1", name="Ann"))
    store.set_inventory(Product(id="P1", name="Pen", price=1.0, stock=3, category="stationery"))
    store.set_cart("u1", {"items": []})

    events = store.events()
    assert [e.type for e in events] == [EventType.USER_UPDATED, EventType.INVENTORY_UPDATED, EventType.CART_UPDATED]
    assert [e.sequence for e in events] == [1, 2, 3]
    assert store.get_user("u1").name == "Ann"
    assert store.get_inventory("P1").stock == 3
    assert "updated_at" in store.get_cart("u1")

    assert [e.type for e in store.events(since=2)] == [EventType.CART_UPDATED]
    assert len(store.events(event_type=EventType.USER_UPDATED)) == 1


def test_subscribers_are_notified_and_isolated():
    store = EventStore()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    store.subscribe(broken)
    store.subscribe(received.append)
    store.set_user(UserProfile(id="u1"))

    assert [e.key for e in received] == ["u1"]
    assert store.get_user("u1") is not None

    store.unsubscribe(received.append)
    store.set_user(UserProfile(id="u2"))
    assert len(received) == 1


def test_rules_are_soft_removed():
    store = EventStore()
    store.add_rule("R1", {"name": "Rule one"})
    store.add_rule("R2", {"name": "Rule two"})

    assert store.remove_rule("R1") is not None
    assert store.remove_rule("missing") is None
    assert store.get_rule("R1")["active"] is False
    assert [r["name"] for r in store.get_all_rules()] == ["Rule two"]


def test_inventory_queries():
    store = EventStore()
    store.set_inventory(Product(id="P1", name="Pen", price=1.0, stock=3, category="stationery"))
    store.set_inventory(Product(id="P2", name="Phone", price=500.0, stock=40, category="smartphones"))

    assert [p.id for p in store.low_stock()] == ["P1"]
    assert [p.id for p in store.low_stock(threshold=100)] == ["P1", "P2"]
    assert [p.id for p in store.category_products("smartphones")] == ["P2"]


def test_sessions_and_cleanup():
    store = EventStore()
    store.set_session("S1", {"is_active": True})
    store.set_session("S2", {"is_active": False})
    store.set_recommendations("u1", [{"product": {"id": "P1"}}])

    assert len(store.active_sessions()) == 1
    assert store.get_recommendations("u1")["items"][0]["product"]["id"] == "P1"

    store.cleanup(max_age=timedelta(hours=1), now=datetime.now() + timedelta(hours=2))
    assert store.get_session("S1") is not None
    assert store.get_session("S2") is None
    assert store.get_recommendations("u1") is None

    store.remove_session("S1")
    assert store.get_session("S1") is None


def test_statistics():
    store = EventStore()
    store.set_user(UserProfile(id="u1"))
    store.add_rule("R1", {})
    stats = store.get_statistics()
    assert stats["total_users"] == 1
    assert stats["active_rules"] == 1
    assert stats["total_events"] == 2


def test_events_keep_the_payload_they_were_written_with():
    store = EventStore()
    user = UserProfile(id="u1")
    store.set_user(user)

    user.browsing_history.append({"category": "audio"})

    first = store.events(event_type=EventType.USER_UPDATED)[0]
    assert first.payload.browsing_history == []
    assert store.get_user("u1").browsing_history == []

    store.set_user(user)
    assert store.get_user("u1").browsing_history == [{"category": "audio"}]
    assert first.payload.browsing_history == []


def test_cleanup_goes_through_the_log():
    store = EventStore()
    store.set_session("S1", {"is_active": False})
    store.set_recommendations("u1", [])

    removed = store.cleanup(max_age=timedelta(hours=1), now=datetime.now() + timedelta(hours=2))

    assert removed == 2
    assert [e.type for e in store.events(since=2)] == [
        EventType.SESSION_REMOVED, EventType.RECOMMENDATIONS_CLEARED
    ]


def test_compact_keeps_projections_and_sequences():
    store = EventStore()
    for i in range(5):
        store.set_inventory(Product(id=f"P{i}", name="Pen", price=1.0, stock=i, category="stationery"))

    assert store.compact(max_events=2) == 3
    assert store.compact(max_events=2) == 0

    assert [e.sequence for e in store.events()] == [4, 5]
    assert [e.sequence for e in store.events(since=4)] == [5]
    assert len(store.get_all_inventory()) == 5
    stats = store.get_statistics()
    assert stats["total_events"] == 5
    assert stats["retained_events"] == 2
