"""Lifecycle state tracking for the managed engines."""

from enum import Enum
from typing import Any, Callable, List, Optional, Tuple


class EngineKind(str, Enum):
    """The two native engines the daemon manages."""

    SPEECH = "speech"
    LANGUAGE_MODEL = "language_model"


class EngineState(str, Enum):
    """Possible lifecycle states of an engine."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    SHUTTING_DOWN = "shutting_down"


StateObserver = Callable[[EngineKind, EngineState, Optional[str]], Any]


class EngineStateManager:
    """Manages the lifecycle state of a single engine."""

    def __init__(self, kind: EngineKind):
        """Initialize state manager in the UNINITIALIZED state."""
        self.kind = kind
        self._state: EngineState = EngineState.UNINITIALIZED
        self._last_error: Optional[str] = None
        self._observers: List[StateObserver] = []

    @property
    def current_state(self) -> EngineState:
        """Get the current state of the engine."""
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message, if any."""
        return self._last_error

    def add_observer(self, observer: StateObserver) -> None:
        """Add an observer callback for state changes.

        The callback receives the engine kind, the new state and optional
        error message.
        """
        self._observers.append(observer)

    def remove_observer(self, observer: StateObserver) -> None:
        """Remove a previously added observer."""
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify_observers(self) -> None:
        """Notify all observers of the current state."""
        for observer in self._observers:
            try:
                observer(self.kind, self._state, self._last_error)
            except Exception:
                # Don't let observer errors break state management
                pass

    def set_state(self, new_state: EngineState) -> None:
        """Set the engine's lifecycle state.

        Args:
            new_state: The new state to set.

        Raises:
            TypeError: If the provided state is not a valid EngineState.
        """
        if not isinstance(new_state, EngineState):
            raise TypeError(f"State must be an EngineState, got {type(new_state)}")

        # Reset error when moving out of failed state
        if new_state != EngineState.FAILED:
            self._last_error = None

        if self._state != new_state:
            self._state = new_state
            self._notify_observers()

    def set_error(self, message: str) -> None:
        """Move to the FAILED state with the provided message.

        Args:
            message: The error message to store.
        """
        changed = self._state != EngineState.FAILED or self._last_error != message
        self._last_error = message
        self._state = EngineState.FAILED

        if changed:
            self._notify_observers()

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Get the current state value and the last error message (if any)."""
        return self.current_state.value, self.last_error
