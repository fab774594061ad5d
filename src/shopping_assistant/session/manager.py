"""
Session Manager - registry of live sessions and the inactivity sweep.
"""
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..utils.logger import get_logger
from .orders import OrderRepository
from .state_machine import SessionState, ShoppingSession

logger = get_logger("session.manager")


class SessionManager:
    """
    Creates and tracks sessions. Sessions idle for `timeout_minutes` are
    abandoned by `sweep_timeouts`, either called directly or from the
    background sweeper thread. `on_abandon` is called with each session the
    sweep abandons, while its lock is still held.
    """

    def __init__(
        self,
        timeout_minutes: int = 30,
        order_repository: Optional[OrderRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
        on_abandon: Optional[Callable[[ShoppingSession], None]] = None,
    ):
        self.timeout = timedelta(minutes=timeout_minutes)
        self.on_abandon = on_abandon
        self.order_repository = order_repository
        self.clock = clock
        self._sessions: dict[str, ShoppingSession] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def create_session(self, user_id: str) -> ShoppingSession:
        session = ShoppingSession(user_id, order_repository=self.order_repository, clock=self.clock)
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info(f"Created session {session.session_id} for user {user_id}")
        return session

    def get_session(self, session_id: str) -> Optional[ShoppingSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def check_session_timeout(self, session_id: str, now: Optional[datetime] = None) -> bool:
        """Abandon one session if it is idle and still active. Returns True when abandoned."""
        session = self.get_session(session_id)
        if session is None:
            return False
        with session.lock:
            if not session.abandon_if_inactive(self.timeout, now):
                return False
            logger.info(f"[{session_id}] Auto-abandoned due to inactivity")
            if self.on_abandon is not None:
                self.on_abandon(session)
        return True

    def sweep_timeouts(self, now: Optional[datetime] = None) -> list[str]:
        """Run the timeout check over every session; returns the abandoned ids."""
        with self._lock:
            session_ids = list(self._sessions.keys())
        return [sid for sid in session_ids if self.check_session_timeout(sid, now)]

    def evict_finished(self, retention: timedelta, now: Optional[datetime] = None) -> list[str]:
        """Forget completed and abandoned sessions idle for longer than `retention`."""
        now = now or self.clock()
        evicted = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.state.is_terminal and now - session.metadata['last_activity'] >= retention:
                    del self._sessions[session_id]
                    evicted.append(session_id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} finished sessions")
        return evicted

    def start_sweeper(self, interval_seconds: float = 60, sweep: Optional[Callable[[], object]] = None) -> None:
        """Run `sweep` (default `sweep_timeouts`) every `interval_seconds` on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        sweep = sweep or self.sweep_timeouts

        def run():
            while not self._stop_event.wait(interval_seconds):
                try:
                    sweep()
                except Exception:
                    logger.exception("Session sweep failed")

        self._sweeper = threading.Thread(target=run, name="session-sweeper", daemon=True)
        self._sweeper.start()
        logger.info(f"Session sweeper started (every {interval_seconds}s, timeout {self.timeout})")

    def stop_sweeper(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def get_active_sessions(self) -> list[ShoppingSession]:
        return [s for s in self.get_all_sessions() if s.is_active()]

    def get_all_sessions(self) -> list[ShoppingSession]:
        with self._lock:
            return list(self._sessions.values())

    def get_session_stats(self) -> dict:
        sessions = self.get_all_sessions()
        by_state = {state.value: 0 for state in SessionState}
        for s in sessions:
            by_state[s.get_state_name()] += 1

        return {
            'total': len(sessions),
            'active': len([s for s in sessions if s.is_active()]),
            'completed': by_state[SessionState.COMPLETED.value],
            'abandoned': by_state[SessionState.ABANDONED.value],
            'by_state': by_state,
        }
