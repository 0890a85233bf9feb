"""
Ramp scheduler for the fleet controller.

The scheduler is the control loop. Once per period it samples demand,
asks the scaling policy for a decision and then ramps the fleet toward
it: candidates are drawn at random, grouped per host, and the start/stop
calls are spread evenly across the period instead of being sent as one
burst. The inventory is only touched after a host confirmed a call.
"""

import random
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .cycle_state import CyclePhase, CycleStateTracker
from .demand import DemandSampler
from .gateway import HostGateway, RemoteCallFailed
from .inventory import CandidateSampler, FleetInventory, Worker, WorkerAction
from .policies import PolicyInputs, ScalingDecision, ScalingPolicy

logger = logging.getLogger(__name__)


class CycleOverlap(Exception):
    """Raised when a cycle is requested while another one is still running"""
    pass


@dataclass
class RampOperation:
    """One remote call: a batch of workers on a single host"""
    action: WorkerAction
    host: int
    workers: List[Worker]

    @property
    def names(self) -> List[str]:
        return [worker.name for worker in self.workers]


@dataclass
class CycleReport:
    """Record of one control cycle"""
    cycle_id: int
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    decision: Optional[ScalingDecision] = None
    interval: float = 0.0
    started: int = 0
    stopped: int = 0
    failed: List[str] = field(default_factory=list)
    skipped: int = 0
    abandoned: int = 0
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "inputs": self.inputs,
            "decision": self.decision.to_dict() if self.decision else None,
            "interval": self.interval,
            "started": self.started,
            "stopped": self.stopped,
            "failed": list(self.failed),
            "skipped": self.skipped,
            "abandoned": self.abandoned,
            "error": self.error,
        }


def compute_pacing_interval(cycle_period: float, to_start: int, to_stop: int) -> float:
    """Delay between logical operations so a ramp fills the whole period"""
    return cycle_period / max(1, to_start + to_stop)


def _group_by_host(action: WorkerAction, workers: List[Worker], batch_size: int) -> List[RampOperation]:
    by_host: Dict[int, List[Worker]] = defaultdict(list)
    for worker in workers:
        by_host[worker.host].append(worker)

    operations = []
    size = max(1, batch_size)
    for host in sorted(by_host):
        host_workers = by_host[host]
        for i in range(0, len(host_workers), size):
            operations.append(RampOperation(action=action, host=host, workers=host_workers[i:i + size]))
    return operations


def plan_operations(inventory: FleetInventory,
                    decision: ScalingDecision,
                    rng: Optional[random.Random] = None,
                    batch_size: int = 1) -> Tuple[List[RampOperation], int]:
    """
    Pick the workers to flip and batch them per host.

    Start candidates come from the disabled set and stop candidates from
    the running set, each drawn without replacement, so no worker is
    picked twice in one cycle. Starts are issued before stops.

    Returns:
        Tuple of (operations in issue order, operations skipped for lack of candidates)
    """
    rng = rng or random.Random()

    to_start = CandidateSampler(inventory.disabled, rng).draw_many(decision.to_start)
    to_stop = CandidateSampler(inventory.running, rng).draw_many(decision.to_stop)

    skipped = (decision.to_start - len(to_start)) + (decision.to_stop - len(to_stop))

    operations = _group_by_host(WorkerAction.START, to_start, batch_size)
    operations.extend(_group_by_host(WorkerAction.STOP, to_stop, batch_size))
    return operations, skipped


class RampScheduler:
    """
    Control loop converging the fleet toward the policy's decision.

    Only one cycle runs at a time: a cycle requested while another is
    still executing is refused with CycleOverlap. The inventory is owned
    by the scheduler and mutated only from inside a running cycle.
    """

    def __init__(self,
                 inventory: FleetInventory,
                 gateway: HostGateway,
                 policy: ScalingPolicy,
                 cycle_period: float = 900.0,
                 sampler: Optional[DemandSampler] = None,
                 batch_size: int = 1,
                 tz: Optional[tzinfo] = None,
                 rng: Optional[random.Random] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 history_size: int = 100):
        if cycle_period < 0:
            raise ValueError("cycle_period must be non-negative")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if policy.requires_demand and sampler is None:
            raise ValueError(f"Policy '{policy.name}' requires a demand sampler")

        self.inventory = inventory
        self.gateway = gateway
        self.policy = policy
        self.cycle_period = cycle_period
        self.sampler = sampler
        self.batch_size = batch_size
        self.tz = tz or timezone.utc

        self._rng = rng or random.Random()
        self._clock = clock
        self._state = CycleStateTracker()

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_running = False

        self._history: deque = deque(maxlen=history_size)
        self._last_report: Optional[CycleReport] = None
        self._cycle_count = 0

    @property
    def phase(self) -> CyclePhase:
        return self._state.phase

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._last_report

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(self.tz)

    # Cycle execution

    def run_cycle(self, trigger: str = "scheduled") -> CycleReport:
        """
        Run one full cycle: sample, decide, ramp.

        Raises:
            CycleOverlap: If another cycle is still in progress
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleOverlap(f"Cycle already in progress (phase: {self.phase.value})")

        try:
            return self._run_cycle_locked(trigger)
        finally:
            self._cycle_lock.release()

    def trigger_cycle(self) -> Optional[CycleReport]:
        """Force one cycle now; returns None if a cycle is already running"""
        try:
            return self.run_cycle(trigger="manual")
        except CycleOverlap as e:
            logger.warning(f"Manual cycle refused: {e}")
            return None

    def _run_cycle_locked(self, trigger: str) -> CycleReport:
        report = CycleReport(
            cycle_id=self._cycle_count + 1,
            trigger=trigger,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(f"Cycle {report.cycle_id} started ({trigger})")

        try:
            previous_demand, current_demand = self._sample_demand(report)

            self._state.transition_to(CyclePhase.DECIDING, f"cycle {report.cycle_id}")
            inputs = PolicyInputs(
                running_count=self.inventory.running_count,
                disabled_count=self.inventory.disabled_count,
                now=self._now(),
                previous_demand=previous_demand,
                current_demand=current_demand,
            )
            decision = self.policy.decide(inputs)
            report.inputs = inputs.to_dict()
            report.decision = decision

            logger.info(f"Cycle {report.cycle_id} policy '{self.policy.name}' "
                        f"inputs={report.inputs} decision={decision.to_dict()}")

            self._state.transition_to(CyclePhase.RAMPING, f"cycle {report.cycle_id}")
            self._ramp(decision, report)

            self._state.transition_to(CyclePhase.IDLE, f"cycle {report.cycle_id} complete")

        except Exception as e:
            report.error = str(e)
            logger.exception(f"Cycle {report.cycle_id} aborted in phase {self.phase.value}: {e}")
            self._state.reset(f"cycle {report.cycle_id} aborted")

        finally:
            report.finished_at = datetime.now(timezone.utc)
            self._cycle_count = report.cycle_id
            self._last_report = report
            self._history.append(report)

        logger.info(f"Cycle {report.cycle_id} finished: started={report.started} stopped={report.stopped} "
                    f"failed={len(report.failed)} skipped={report.skipped} abandoned={report.abandoned} "
                    f"running={self.inventory.running_count} disabled={self.inventory.disabled_count}")
        return report

    def _sample_demand(self, report: CycleReport) -> Tuple[Optional[float], Optional[float]]:
        """Refresh the demand signal; on failure the last good sample is reused with zero change"""
        if self.sampler is None:
            return None, None

        self._state.transition_to(CyclePhase.SAMPLING, f"cycle {report.cycle_id}")
        self.sampler.refresh()

        current = self.sampler.current
        if current is None:
            return None, None

        if not self.sampler.fresh:
            return current.value, current.value

        previous = self.sampler.previous
        return (previous.value if previous else None), current.value

    def _ramp(self, decision: ScalingDecision, report: CycleReport) -> None:
        """Issue the paced start/stop calls for a decision"""
        report.interval = compute_pacing_interval(self.cycle_period, decision.to_start, decision.to_stop)
        if decision.is_noop:
            logger.debug(f"Cycle {report.cycle_id}: fleet already at target, nothing to ramp")
            return

        operations, skipped = plan_operations(self.inventory, decision, self._rng, self.batch_size)
        report.skipped = skipped
        if skipped:
            logger.info(f"Cycle {report.cycle_id}: {skipped} operations skipped, no candidates left")

        for index, operation in enumerate(operations):
            if self._stop_event.is_set():
                report.abandoned = sum(len(op.workers) for op in operations[index:])
                logger.warning(f"Cycle {report.cycle_id}: shutdown requested, abandoning "
                               f"{report.abandoned} remaining operations")
                break

            self._execute(operation, report)

            if index < len(operations) - 1:
                # Pacing applies per worker, so a batch of n waits n intervals
                self._pause(report.interval * len(operation.workers))

    def _execute(self, operation: RampOperation, report: CycleReport) -> bool:
        """Send one batch to its host and record confirmed transitions"""
        if operation.action == WorkerAction.START:
            call = self.gateway.start_workers
        else:
            call = self.gateway.stop_workers

        confirmed = list(operation.workers)
        try:
            call(operation.host, operation.names)
        except RemoteCallFailed as e:
            failed = set(e.failed)
            confirmed = [worker for worker in operation.workers if worker.name not in failed]
            report.failed.extend(str(worker) for worker in operation.workers if worker.name in failed)
            logger.error(f"Cycle {report.cycle_id} ramping: {operation.action.value} failed on host "
                         f"{operation.host} for {','.join(e.failed)}: {e}")
        except Exception as e:
            report.failed.extend(str(worker) for worker in operation.workers)
            logger.error(f"Cycle {report.cycle_id} ramping: unexpected error during {operation.action.value} "
                         f"on host {operation.host} for {','.join(operation.names)}: {e}")
            return False

        for worker in confirmed:
            self.inventory.record_transition(worker, operation.action)

        if operation.action == WorkerAction.START:
            report.started += len(confirmed)
        else:
            report.stopped += len(confirmed)

        if confirmed:
            logger.debug(f"Cycle {report.cycle_id}: {operation.action.value} confirmed on host "
                         f"{operation.host} for {','.join(w.name for w in confirmed)}")
        return len(confirmed) == len(operation.workers)

    def _pause(self, seconds: float) -> bool:
        """Wait between operations; returns True if shutdown was requested meanwhile"""
        if seconds <= 0:
            return self._stop_event.is_set()
        return self._stop_event.wait(seconds)

    # Loop management

    def request_cycle(self) -> None:
        """Wake the loop so the next cycle starts immediately"""
        self._wake_event.set()

    def run_forever(self, run_immediately: bool = True) -> None:
        """Run cycles every cycle_period until stop() is called"""
        if threading.current_thread() is not self._loop_thread:
            # start() clears the event itself before the thread runs
            self._stop_event.clear()
        self._loop_running = True
        logger.info(f"Fleet control loop started (period {self.cycle_period:.0f}s, policy '{self.policy.name}')")

        trigger = "scheduled"
        try:
            if not run_immediately:
                trigger = self._wait_for_next_cycle(self.cycle_period)

            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    self.run_cycle(trigger=trigger)
                except CycleOverlap as e:
                    logger.warning(f"Scheduled cycle skipped: {e}")

                elapsed = time.monotonic() - started
                trigger = self._wait_for_next_cycle(max(0.0, self.cycle_period - elapsed))
        finally:
            self._loop_running = False
            logger.info("Fleet control loop stopped")

    def _wait_for_next_cycle(self, timeout: float) -> str:
        woken = self._wake_event.wait(timeout)
        self._wake_event.clear()
        return "manual" if woken and not self._stop_event.is_set() else "scheduled"

    def start(self) -> None:
        """Run the control loop in a background thread"""
        if self._loop_thread and self._loop_thread.is_alive():
            return

        self._stop_event.clear()
        self._loop_thread = threading.Thread(
            target=self.run_forever,
            name="FleetRampScheduler",
            daemon=True
        )
        self._loop_thread.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the control loop; an in-flight call finishes, remaining ramp steps are abandoned"""
        self._stop_event.set()
        self._wake_event.set()

        if self._loop_thread and self._loop_thread.is_alive():
            self._loop_thread.join(timeout=timeout)

    # Status

    def get_status(self) -> Dict[str, Any]:
        """Read-only status for operators"""
        report = self.last_report
        status = self.inventory.snapshot()
        status.update({
            "phase": self.phase.value,
            "cycle_running": self.is_cycle_running,
            "recent_phases": [
                f"{t.from_state.value}->{t.to_state.value}" for t in self._state.get_history(limit=8)
            ],
            "cycle_count": self._cycle_count,
            "policy": self.policy.name,
            "loop_running": self._loop_running,
            "last_cycle_decision": report.decision.to_dict() if report and report.decision else None,
            "last_cycle_report": report.to_dict() if report else None,
        })
        if self.sampler is not None:
            status["demand"] = self.sampler.get_state()
        return status

    def get_cycle_history(self, limit: Optional[int] = None) -> List[CycleReport]:
        history = list(self._history)
        return history[-limit:] if limit else history
