"""
Scaling policies for the fleet controller.

A policy turns the inventory counts, the wall-clock time and the demand
signal into a ScalingDecision: how many workers to start and how many to
stop this cycle. Policies are pure and stateless; the ramp scheduler only
ever sees the decision, so strategies can be swapped without touching it.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

HOURS_PER_DAY = 24

# Fraction of max_workers kept active for each hour of the day (index = hour)
DEFAULT_HOURLY_TABLE: List[float] = [
    0.30, 0.25, 0.20, 0.15, 0.15, 0.15,
    0.20, 0.30, 0.40, 0.45, 0.50, 0.55,
    0.60, 0.60, 0.60, 0.65, 0.70, 0.80,
    0.90, 1.00, 1.00, 0.90, 0.70, 0.50,
]


class PolicyType(Enum):
    """Available scaling strategies"""
    HOURLY_CURVE = "hourly_curve"
    SINUSOIDAL = "sinusoidal"
    PEAK_DIP = "peak_dip"
    DEMAND_PROPORTIONAL = "demand_proportional"


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values"""
    return int(math.floor(value + 0.5))


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(value, upper))


@dataclass(frozen=True)
class PolicyInputs:
    """Everything a policy may look at for one cycle"""
    running_count: int
    disabled_count: int
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    previous_demand: Optional[float] = None
    current_demand: Optional[float] = None

    @property
    def hour(self) -> int:
        return self.now.hour

    @property
    def minute(self) -> int:
        return self.now.minute

    @property
    def total_workers(self) -> int:
        return self.running_count + self.disabled_count

    @property
    def demand_delta(self) -> Optional[float]:
        if self.previous_demand is None or self.current_demand is None:
            return None
        return self.current_demand - self.previous_demand

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running_count": self.running_count,
            "disabled_count": self.disabled_count,
            "now": self.now.isoformat(),
            "hour": self.hour,
            "minute": self.minute,
            "previous_demand": self.previous_demand,
            "current_demand": self.current_demand,
            "demand_delta": self.demand_delta,
        }


@dataclass(frozen=True)
class ScalingDecision:
    """Outcome of a policy evaluation; derived every cycle, never persisted"""
    target_active: int
    current_active: int
    to_start: int
    to_stop: int
    policy: str = ""
    reason: str = ""

    @property
    def total_operations(self) -> int:
        return self.to_start + self.to_stop

    @property
    def is_noop(self) -> bool:
        return self.total_operations == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_active": self.target_active,
            "current_active": self.current_active,
            "to_start": self.to_start,
            "to_stop": self.to_stop,
            "policy": self.policy,
            "reason": self.reason,
        }


class ScalingPolicy(ABC):
    """Abstract base class for scaling policies"""

    policy_type: PolicyType

    def __init__(self, max_workers: int):
        if max_workers < 0:
            raise ValueError("max_workers must be non-negative")
        self.max_workers = max_workers

    @property
    def name(self) -> str:
        return self.policy_type.value

    @property
    def requires_demand(self) -> bool:
        """Whether the policy needs a demand sample each cycle"""
        return False

    @abstractmethod
    def decide(self, inputs: PolicyInputs) -> ScalingDecision:
        """Compute how many workers to start and stop for this cycle"""
        pass

    def _nudge(self, inputs: PolicyInputs, to_start: int, to_stop: int, reason: str) -> ScalingDecision:
        """
        Build a decision from raw start/stop counts.

        Negative counts become zero; starts are limited to the disabled
        workers that exist and to the max_workers ceiling, stops to the
        running workers.
        """
        running = inputs.running_count
        headroom = max(0, self.max_workers - running)

        to_start = clamp(int(to_start), 0, min(inputs.disabled_count, headroom))
        to_stop = clamp(int(to_stop), 0, running)

        return ScalingDecision(
            target_active=running + to_start - to_stop,
            current_active=running,
            to_start=to_start,
            to_stop=to_stop,
            policy=self.name,
            reason=reason,
        )


class TargetPolicy(ScalingPolicy):
    """Policy that computes an absolute target and closes the gap to it"""

    @abstractmethod
    def target_active(self, inputs: PolicyInputs) -> int:
        """Desired number of active workers, before clamping"""
        pass

    def decide(self, inputs: PolicyInputs) -> ScalingDecision:
        target = clamp(self.target_active(inputs), 0, self.max_workers)
        running = inputs.running_count

        decision = self._nudge(
            inputs,
            to_start=target - running,
            to_stop=running - target,
            reason=f"Target {target} active at {inputs.hour:02d}:{inputs.minute:02d}",
        )
        # Report the policy's target even if there are not enough disabled workers to reach it
        return replace(decision, target_active=target)


class HourlyCurvePolicy(TargetPolicy):
    """Fixed fraction of max_workers per hour of day, stepping at the hour"""

    policy_type = PolicyType.HOURLY_CURVE

    def __init__(self, max_workers: int, table: Optional[Sequence[float]] = None):
        super().__init__(max_workers)
        table = list(DEFAULT_HOURLY_TABLE if table is None else table)

        if len(table) != HOURS_PER_DAY:
            raise ValueError(f"hourly table must have {HOURS_PER_DAY} entries, got {len(table)}")
        if any(value < 0 or value > 1 for value in table):
            raise ValueError("hourly table values must be between 0 and 1")

        self.table = table

    def target_active(self, inputs: PolicyInputs) -> int:
        return round_half_up(self.max_workers * self.table[inputs.hour])


class SinusoidalPolicy(TargetPolicy):
    """
    Sine-shaped daily curve around max_workers / 2.

    The hourly values are linearly interpolated by the minute so the
    target moves smoothly instead of stepping at each hour.
    """

    policy_type = PolicyType.SINUSOIDAL

    def __init__(self, max_workers: int, phase_shift: float = -6.0):
        super().__init__(max_workers)
        self.phase_shift = phase_shift
        self.baseline = max_workers / 2
        self.amplitude = max_workers / 2

    def hourly_target(self, hour: int) -> int:
        angle = 2 * math.pi / HOURS_PER_DAY * (hour + self.phase_shift)
        return round_half_up(self.baseline + self.amplitude * math.sin(angle))

    def target_active(self, inputs: PolicyInputs) -> int:
        fraction = inputs.minute / 60
        current = self.hourly_target(inputs.hour)
        upcoming = self.hourly_target((inputs.hour + 1) % HOURS_PER_DAY)
        return round_half_up(current + (upcoming - current) * fraction)


class PeakDipPolicy(ScalingPolicy):
    """
    One-directional nudge based on the hour being a peak or a dip hour.

    In a peak hour (factor > 1) a share of the disabled workers is
    started; in a dip hour (factor < 1) a share of the running workers is
    stopped. Other hours use the neutral factor of 1, which starts
    disabled_count / batch_divisor workers. Never starts and stops in the
    same cycle.
    """

    policy_type = PolicyType.PEAK_DIP

    def __init__(self,
                 max_workers: int,
                 peak_hours: Iterable[int] = (18, 19, 20, 21),
                 dip_hours: Iterable[int] = (2, 3, 4, 5),
                 peak_factor: float = 1.5,
                 dip_factor: float = 0.5,
                 batch_divisor: float = 4.0):
        super().__init__(max_workers)
        self.peak_hours = frozenset(peak_hours)
        self.dip_hours = frozenset(dip_hours)
        self.peak_factor = peak_factor
        self.dip_factor = dip_factor
        self.batch_divisor = batch_divisor

        if self.peak_hours & self.dip_hours:
            raise ValueError("peak_hours and dip_hours must not overlap")
        if peak_factor < 1:
            raise ValueError("peak_factor must be >= 1")
        if not 0 <= dip_factor < 1:
            raise ValueError("dip_factor must be in [0, 1)")
        if batch_divisor <= 0:
            raise ValueError("batch_divisor must be positive")

    def scaling_factor(self, hour: int) -> float:
        if hour in self.peak_hours:
            return self.peak_factor
        if hour in self.dip_hours:
            return self.dip_factor
        return 1.0

    def decide(self, inputs: PolicyInputs) -> ScalingDecision:
        factor = self.scaling_factor(inputs.hour)

        if factor >= 1:
            to_start = math.ceil(inputs.disabled_count * factor / self.batch_divisor)
            return self._nudge(inputs, to_start, 0,
                               f"Hour {inputs.hour} factor {factor}: starting share of disabled workers")

        # Stop share never goes negative
        stop_share = max(0.0, 1 - factor)
        to_stop = math.ceil(inputs.running_count * stop_share / self.batch_divisor)
        return self._nudge(inputs, 0, to_stop,
                           f"Hour {inputs.hour} factor {factor}: stopping share of running workers")


class DemandProportionalPolicy(ScalingPolicy):
    """
    Adjust the fleet in proportion to the change in demand.

    A demand rise of delta starts delta * multiplication_factor workers, a
    fall stops the same proportion. A zero sample means the signal is
    unknown, not that nobody is active, so nothing happens then.
    """

    policy_type = PolicyType.DEMAND_PROPORTIONAL

    def __init__(self, max_workers: int, multiplication_factor: float = 1.0):
        super().__init__(max_workers)
        if multiplication_factor < 0:
            raise ValueError("multiplication_factor must be non-negative")
        self.multiplication_factor = multiplication_factor

    @property
    def requires_demand(self) -> bool:
        return True

    def decide(self, inputs: PolicyInputs) -> ScalingDecision:
        previous, current = inputs.previous_demand, inputs.current_demand

        if previous is None or current is None:
            return self._nudge(inputs, 0, 0, "Waiting for two demand samples")
        if previous == 0 or current == 0:
            return self._nudge(inputs, 0, 0, "Demand sample is zero, treated as unknown")

        delta = current - previous
        if delta == 0:
            return self._nudge(inputs, 0, 0, "Demand unchanged")

        amount = math.ceil(abs(delta) * self.multiplication_factor)
        if delta > 0:
            return self._nudge(inputs, amount, 0, f"Demand rose by {delta:g} ({previous:g} -> {current:g})")
        return self._nudge(inputs, 0, amount, f"Demand fell by {-delta:g} ({previous:g} -> {current:g})")


def create_policy(config) -> ScalingPolicy:
    """
    Create the scaling policy selected by a FleetControllerConfig.

    Raises:
        ValueError: If the configured policy is unknown
    """
    policy_type = PolicyType(config.policy)

    if policy_type == PolicyType.HOURLY_CURVE:
        return HourlyCurvePolicy(config.max_workers, table=config.hourly_curve.table)

    if policy_type == PolicyType.SINUSOIDAL:
        return SinusoidalPolicy(config.max_workers, phase_shift=config.sinusoidal.phase_shift)

    if policy_type == PolicyType.PEAK_DIP:
        peak_dip = config.peak_dip
        return PeakDipPolicy(
            config.max_workers,
            peak_hours=peak_dip.peak_hours,
            dip_hours=peak_dip.dip_hours,
            peak_factor=peak_dip.peak_factor,
            dip_factor=peak_dip.dip_factor,
            batch_divisor=peak_dip.batch_divisor,
        )

    return DemandProportionalPolicy(
        config.max_workers,
        multiplication_factor=config.demand.multiplication_factor,
    )
