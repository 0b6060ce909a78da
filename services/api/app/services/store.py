from __future__ import annotations

import threading

from services.api.app.checkout.orchestrator import CheckoutOrchestrator


class InMemorySessionStore:
    """Live checkout sessions of this process, keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, CheckoutOrchestrator] = {}
        self._lock = threading.Lock()

    def save(self, orchestrator: CheckoutOrchestrator) -> None:
        with self._lock:
            self._sessions[orchestrator.session.session_id] = orchestrator

    def get(self, session_id: str) -> CheckoutOrchestrator | None:
        with self._lock:
            return self._sessions.get(session_id)

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)


store = InMemorySessionStore()
