"""Tracking state machine.

States are an explicit enum and every change goes through ``transition``,
which rejects any edge not listed in ``ALLOWED_TRANSITIONS``:

    INITIALIZING -> TRACKING
    TRACKING -> LOST
    LOST -> RELOCALIZING
    RELOCALIZING -> TRACKING | LOST | LOST_PERMANENT
    any -> INITIALIZING (reset)
"""

from __future__ import annotations

import logging
from enum import Enum

from ..errors import IllegalTransitionError

logger = logging.getLogger(__name__)


class TrackingState(Enum):
    """State of the pose estimator."""

    INITIALIZING = "INITIALIZING"
    TRACKING = "TRACKING"
    LOST = "LOST"
    RELOCALIZING = "RELOCALIZING"
    LOST_PERMANENT = "LOST_PERMANENT"


ALLOWED_TRANSITIONS: dict[TrackingState, frozenset[TrackingState]] = {
    TrackingState.INITIALIZING: frozenset({TrackingState.TRACKING}),
    TrackingState.TRACKING: frozenset({TrackingState.LOST}),
    TrackingState.LOST: frozenset({TrackingState.RELOCALIZING}),
    TrackingState.RELOCALIZING: frozenset(
        {TrackingState.TRACKING, TrackingState.LOST, TrackingState.LOST_PERMANENT}
    ),
    TrackingState.LOST_PERMANENT: frozenset(),
}


class TrackingStateMachine:
    """Holds the current state, the transition history and the attempt counter."""

    def __init__(self, max_relocalization_attempts: int = 30) -> None:
        self._state = TrackingState.INITIALIZING
        self._max_attempts = max_relocalization_attempts
        self._attempts = 0
        self._history: list[tuple[TrackingState, TrackingState]] = []

    @property
    def state(self) -> TrackingState:
        """Current state."""
        return self._state

    @property
    def history(self) -> list[tuple[TrackingState, TrackingState]]:
        """All transitions taken so far, oldest first."""
        return list(self._history)

    @property
    def relocalization_attempts(self) -> int:
        """Failed relocalization attempts since tracking was lost."""
        return self._attempts

    def can_transition(self, target: TrackingState) -> bool:
        """Return True if target is reachable from the current state."""
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: TrackingState) -> None:
        """Move to target.

        Raises:
            IllegalTransitionError: If the edge is not allowed
        """
        if not self.can_transition(target):
            raise IllegalTransitionError(self._state, target)

        logger.info("[Tracking] %s -> %s", self._state.value, target.value)
        self._history.append((self._state, target))
        # The attempt budget covers one loss episode
        if TrackingState.TRACKING in (self._state, target):
            self._attempts = 0
        self._state = target

    def record_failed_attempt(self) -> bool:
        """Count a failed relocalization attempt.

        Returns:
            True if the attempt budget is exhausted
        """
        self._attempts += 1
        return self._attempts >= self._max_attempts

    def reset(self) -> None:
        """Return to INITIALIZING from any state."""
        if self._state != TrackingState.INITIALIZING:
            logger.info("[Tracking] %s -> INITIALIZING (reset)", self._state.value)
            self._history.append((self._state, TrackingState.INITIALIZING))
        self._state = TrackingState.INITIALIZING
        self._attempts = 0
