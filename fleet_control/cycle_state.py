"""
Control cycle phase tracking for the fleet controller.

Each cycle walks Idle -> Sampling -> Deciding -> Ramping -> Idle. The
tracker validates every transition and keeps a bounded history so the
decision trail of recent cycles can be reconstructed.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set


class PhaseTransitionError(Exception):
    """Raised when an invalid cycle phase transition is attempted"""
    pass


class CyclePhase(Enum):
    """Phases of one control cycle"""
    IDLE = "idle"
    SAMPLING = "sampling"
    DECIDING = "deciding"
    RAMPING = "ramping"


@dataclass
class PhaseTransition:
    """Represents a phase transition with metadata"""
    from_state: CyclePhase
    to_state: CyclePhase
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message: Optional[str] = None


class PhaseValidator:
    """
    Validates cycle phase transitions.

    Deciding may be entered straight from Idle when no demand sampler is
    configured. Any phase may fall back to Idle when a cycle is aborted.
    """

    VALID_TRANSITIONS: Dict[CyclePhase, Set[CyclePhase]] = {
        CyclePhase.IDLE: {CyclePhase.SAMPLING, CyclePhase.DECIDING},
        CyclePhase.SAMPLING: {CyclePhase.DECIDING, CyclePhase.IDLE},
        CyclePhase.DECIDING: {CyclePhase.RAMPING, CyclePhase.IDLE},
        CyclePhase.RAMPING: {CyclePhase.IDLE},
    }

    @classmethod
    def is_valid_transition(cls, from_state: CyclePhase, to_state: CyclePhase) -> bool:
        """Check if a phase transition is valid"""
        return to_state in cls.VALID_TRANSITIONS.get(from_state, set())

    @classmethod
    def get_valid_next_states(cls, current_state: CyclePhase) -> Set[CyclePhase]:
        """Get all valid next phases for a given phase"""
        return cls.VALID_TRANSITIONS.get(current_state, set()).copy()

    @classmethod
    def validate_transition(cls, from_state: CyclePhase, to_state: CyclePhase) -> None:
        """
        Validate a phase transition, raising an exception if invalid.

        Raises:
            PhaseTransitionError: If transition is invalid
        """
        if not cls.is_valid_transition(from_state, to_state):
            valid_states = sorted(s.value for s in cls.get_valid_next_states(from_state))
            raise PhaseTransitionError(
                f"Invalid phase transition from {from_state.value} to {to_state.value}. "
                f"Valid transitions: {valid_states}"
            )


class CycleStateTracker:
    """Current cycle phase plus a bounded history of transitions"""

    def __init__(self, history_size: int = 200):
        self._phase = CyclePhase.IDLE
        self._history: deque = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    def transition_to(self, new_phase: CyclePhase, message: Optional[str] = None) -> PhaseTransition:
        """
        Move to a new phase after validating the transition.

        Raises:
            PhaseTransitionError: If the transition is not allowed
        """
        with self._lock:
            PhaseValidator.validate_transition(self._phase, new_phase)
            transition = PhaseTransition(from_state=self._phase, to_state=new_phase, message=message)
            self._phase = new_phase
            self._history.append(transition)
            return transition

    def reset(self, message: Optional[str] = None) -> Optional[PhaseTransition]:
        """Abort back to Idle from any phase; no-op when already idle"""
        with self._lock:
            if self._phase == CyclePhase.IDLE:
                return None
            transition = PhaseTransition(from_state=self._phase, to_state=CyclePhase.IDLE, message=message)
            self._phase = CyclePhase.IDLE
            self._history.append(transition)
            return transition

    def get_history(self, limit: Optional[int] = None) -> List[PhaseTransition]:
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history
