"""Credential lifecycle state machine.

    disconnected --(OAuth callback)--> connected
    connected    --(token past expiry)--> refreshing
    refreshing   --(new token pair)--> connected
    refreshing   --(grant invalid / user disconnect)--> disconnected
    connected    --(user disconnect)--> disconnected

Any other move is a programming error.
"""

from __future__ import annotations

from enum import Enum


class CredentialState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    REFRESHING = "refreshing"


_TRANSITIONS: dict[CredentialState, frozenset[CredentialState]] = {
    CredentialState.DISCONNECTED: frozenset({CredentialState.CONNECTED}),
    CredentialState.CONNECTED: frozenset(
        {CredentialState.REFRESHING, CredentialState.DISCONNECTED}
    ),
    CredentialState.REFRESHING: frozenset(
        {CredentialState.CONNECTED, CredentialState.DISCONNECTED}
    ),
}


class IllegalTransitionError(RuntimeError):
    """Raised when code attempts a lifecycle move the state machine forbids."""

    def __init__(self, current: CredentialState, target: CredentialState) -> None:
        super().__init__(f"Illegal credential transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: CredentialState, target: CredentialState) -> bool:
    return target in _TRANSITIONS[current]


def ensure_transition(current: CredentialState, target: CredentialState) -> CredentialState:
    """Validate ``current -> target`` and return ``target``.

    Raises:
        IllegalTransitionError: If the move is not in the state machine.
    """
    if not can_transition(current, target):
        raise IllegalTransitionError(current, target)
    return target
