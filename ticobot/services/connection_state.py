from enum import Enum


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    AWAITING_SCAN = "awaiting_scan"
    AUTHENTICATED = "authenticated"
    READY = "ready"


class ReadinessSource(str, Enum):
    SIGNAL = "signal"
    INFERRED = "inferred"


VALID_TRANSITIONS = {
    ConnectionState.DISCONNECTED: [
        ConnectionState.AWAITING_SCAN,
        ConnectionState.AUTHENTICATED,
        ConnectionState.READY,
    ],
    ConnectionState.AWAITING_SCAN: [
        ConnectionState.AWAITING_SCAN,
        ConnectionState.AUTHENTICATED,
        ConnectionState.DISCONNECTED,
    ],
    ConnectionState.AUTHENTICATED: [
        ConnectionState.READY,
        ConnectionState.AWAITING_SCAN,
        ConnectionState.DISCONNECTED,
    ],
    ConnectionState.READY: [ConnectionState.AWAITING_SCAN, ConnectionState.DISCONNECTED],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConnectionState, to_state: ConnectionState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConnectionState, to_state: ConnectionState) -> bool:
    """Check if transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: ConnectionState, to_state: ConnectionState) -> ConnectionState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def require_scan(current_state: ConnectionState) -> ConnectionState:
    """Gateway asks for a new QR scan."""
    return transition(current_state, ConnectionState.AWAITING_SCAN)


def authenticate(current_state: ConnectionState) -> ConnectionState:
    """Credentials accepted, session not yet usable."""
    return transition(current_state, ConnectionState.AUTHENTICATED)


def mark_ready(current_state: ConnectionState) -> ConnectionState:
    """Explicit ready signal from the gateway."""
    return transition(current_state, ConnectionState.READY)


def infer_ready(current_state: ConnectionState) -> ConnectionState:
    """Liveness probe succeeded while stuck in AUTHENTICATED."""
    if current_state != ConnectionState.AUTHENTICATED:
        raise InvalidTransitionError(current_state, ConnectionState.READY)
    return ConnectionState.READY


def disconnect(current_state: ConnectionState) -> ConnectionState:
    """Session lost."""
    return transition(current_state, ConnectionState.DISCONNECTED)
