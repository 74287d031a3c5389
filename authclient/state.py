"""
Observable Auth State.

Provides an injectable ``AuthStateContainer`` that owns the current
``AuthUiState`` snapshot and notifies subscribers on every change.

Usage::

    from authclient.state import AuthStateContainer

    container = AuthStateContainer()
    unsubscribe = container.subscribe(lambda state: print(state.stage))
    container.update(is_loading=True)
    unsubscribe()
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from authclient.logger import StructuredLogger
from authclient.models.session_models import AuthUiState

StateObserver = Callable[[AuthUiState], None]


class AuthStateContainer:
    """Injectable holder for the UI-observable auth state.

    Each instance maintains its own state, eliminating the need for
    module-level globals.  Snapshots are immutable; every change
    produces a new ``AuthUiState`` which is pushed to observers in
    subscription order.

    Parameters
    ----------
    initial:
        Starting snapshot.  Defaults to an unauthenticated, idle state.
    logger:
        Optional logger; observer failures are reported there.
    """

    def __init__(
        self,
        initial: Optional[AuthUiState] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._state: AuthUiState = initial or AuthUiState()
        self._observers: list[StateObserver] = []
        self._logger: Optional[StructuredLogger] = logger

    @property
    def state(self) -> AuthUiState:
        """Return the current snapshot."""
        with self._lock:
            return self._state

    @property
    def is_authenticated(self) -> bool:
        with self._lock:
            return self._state.is_authenticated

    def update(self, **changes: Any) -> AuthUiState:
        """Apply *changes* to the current snapshot and notify observers."""
        with self._lock:
            unknown = set(changes) - set(AuthUiState.model_fields)
            if unknown:
                raise AttributeError(f"Unknown state field(s): {sorted(unknown)}")
            new_state = self._state.model_copy(update=changes)
            if new_state == self._state:
                return self._state
            self._state = new_state
            observers = list(self._observers)
        self._notify(observers, new_state)
        return new_state

    def replace(self, state: AuthUiState) -> AuthUiState:
        """Swap in *state* wholesale and notify observers."""
        with self._lock:
            self._state = state
            observers = list(self._observers)
        self._notify(observers, state)
        return state

    def reset(self) -> AuthUiState:
        """Return to the initial unauthenticated, idle state."""
        return self.replace(AuthUiState())

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register *observer*; it is called immediately with the current state.

        Returns
        -------
        Callable[[], None]
            Unsubscribe function.  Calling it twice is harmless.
        """
        with self._lock:
            self._observers.append(observer)
            current = self._state

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        self._notify([observer], current)
        return unsubscribe

    def _notify(self, observers: list[StateObserver], state: AuthUiState) -> None:
        for observer in observers:
            try:
                observer(state)
            except Exception as exc:
                if self._logger is not None:
                    self._logger.exception(
                        "State observer %r failed: %s", observer, exc,
                        extra={"event": "STATE_OBSERVER_ERROR"},
                    )
