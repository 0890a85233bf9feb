"""
Fleet inventory for the fleet controller.

Keeps every discovered worker in exactly one of two sets, running or
disabled. The population is fixed at discovery; afterwards only the
activity state of a worker changes, and only after a host confirmed it.
"""

import concurrent.futures
import random
import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple
import logging

from .gateway import DiscoveryFailure, HostGateway, RemoteCallFailed

logger = logging.getLogger(__name__)


class WorkerAction(Enum):
    """Activity change requested for a worker"""
    START = "start"
    STOP = "stop"


@dataclass(frozen=True, order=True)
class Worker:
    """A remotely hosted worker; names are unique only within a host"""
    host: int
    name: str

    def __str__(self) -> str:
        return f"{self.name}@{self.host}"


class FleetInventory:
    """
    Registry of all known workers partitioned into running and disabled.

    Invariant: every worker is in exactly one of the two sets, and the
    total population never changes after construction.
    """

    def __init__(self, running: Iterable[Worker] = (), disabled: Iterable[Worker] = ()):
        self._running = set(running)
        self._disabled = set(disabled)

        overlap = self._running & self._disabled
        if overlap:
            names = ", ".join(str(w) for w in sorted(overlap))
            raise ValueError(f"Workers cannot be both running and disabled: {names}")

        self._total = len(self._running) + len(self._disabled)
        self._lock = threading.RLock()

    @property
    def running(self) -> FrozenSet[Worker]:
        with self._lock:
            return frozenset(self._running)

    @property
    def disabled(self) -> FrozenSet[Worker]:
        with self._lock:
            return frozenset(self._disabled)

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    @property
    def disabled_count(self) -> int:
        with self._lock:
            return len(self._disabled)

    @property
    def total_workers(self) -> int:
        return self._total

    def __contains__(self, worker: Worker) -> bool:
        with self._lock:
            return worker in self._running or worker in self._disabled

    def record_transition(self, worker: Worker, action: WorkerAction) -> bool:
        """
        Move a worker to the set matching a confirmed start or stop.

        Must only be called after the host confirmed the call. Calling it
        again for a worker already in the target set is a no-op.

        Args:
            worker: Worker whose activity changed
            action: The confirmed action

        Returns:
            True if the worker moved, False if it was already in place

        Raises:
            KeyError: If the worker was never discovered
        """
        with self._lock:
            if worker not in self._running and worker not in self._disabled:
                raise KeyError(f"Unknown worker {worker}")

            if action == WorkerAction.START:
                source, target = self._disabled, self._running
            else:
                source, target = self._running, self._disabled

            if worker in target:
                return False

            source.discard(worker)
            target.add(worker)
            return True

    def snapshot(self) -> Dict[str, int]:
        """Get inventory counts"""
        with self._lock:
            return {
                "running_count": len(self._running),
                "disabled_count": len(self._disabled),
                "total_workers": self._total,
            }


class CandidateSampler:
    """
    Uniform sampler over a pool of workers, without replacement.

    Drawing from an empty pool returns None instead of failing, so a ramp
    that asked for more workers than exist simply runs out of candidates.
    """

    def __init__(self, pool: Iterable[Worker], rng: Optional[random.Random] = None):
        # Sorted so a seeded rng gives reproducible draws
        self._pool: List[Worker] = sorted(pool)
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._pool)

    def draw(self) -> Optional[Worker]:
        """Remove and return one worker chosen uniformly at random"""
        if not self._pool:
            return None

        index = self._rng.randrange(len(self._pool))
        # Swap with the last element so removal is O(1)
        self._pool[index], self._pool[-1] = self._pool[-1], self._pool[index]
        return self._pool.pop()

    def draw_many(self, count: int) -> List[Worker]:
        """Draw up to count workers; fewer if the pool runs out"""
        drawn = []
        for _ in range(max(0, count)):
            worker = self.draw()
            if worker is None:
                break
            drawn.append(worker)
        return drawn


def enumerate_workers(gateway: HostGateway, max_workers: int = 4) -> Tuple[List[Worker], Dict[int, DiscoveryFailure]]:
    """
    Enumerate the workers of every host in parallel.

    A host that cannot be enumerated contributes zero workers; its failure
    is logged and returned, and discovery carries on with the others.

    Returns:
        Tuple of (workers ordered by host then listing order, failures by host)
    """
    found: Dict[int, List[Worker]] = {}
    failures: Dict[int, DiscoveryFailure] = {}

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        future_to_host = {
            executor.submit(gateway.list_worker_names, host): host
            for host in range(gateway.host_count)
        }

        for future in concurrent.futures.as_completed(future_to_host):
            host = future_to_host[future]
            try:
                names = future.result()
            except DiscoveryFailure as e:
                failures[host] = e
                logger.error(f"Discovery failed for host {host}, contributing zero workers: {e}")
                continue
            except Exception as e:
                failures[host] = DiscoveryFailure(host, e)
                logger.error(f"Discovery failed for host {host}, contributing zero workers: {e}")
                continue

            seen = set()
            workers = []
            for name in names:
                if name in seen:
                    logger.warning(f"Host {host} listed worker '{name}' more than once")
                    continue
                seen.add(name)
                workers.append(Worker(host=host, name=name))

            found[host] = workers
            logger.info(f"Discovered {len(workers)} workers on host {host}")

    ordered = [worker for host in sorted(found) for worker in found[host]]
    return ordered, failures


def _batched(names: Sequence[str], size: int) -> List[List[str]]:
    size = max(1, size)
    return [list(names[i:i + size]) for i in range(0, len(names), size)]


def force_assignment(gateway: HostGateway,
                     to_run: Sequence[Worker],
                     to_disable: Sequence[Worker],
                     batch_size: int = 1) -> FleetInventory:
    """
    Issue start/stop calls so hosts match a chosen activity split.

    A worker whose start was not confirmed is recorded as disabled; a
    worker whose stop was not confirmed stays recorded as running so a
    later cycle can still stop it.
    """
    running: List[Worker] = []
    disabled: List[Worker] = []

    plan = [
        (WorkerAction.START, to_run, gateway.start_workers, running, disabled),
        (WorkerAction.STOP, to_disable, gateway.stop_workers, disabled, running),
    ]

    for action, workers, call, on_success, on_failure in plan:
        by_host: Dict[int, List[Worker]] = defaultdict(list)
        for worker in workers:
            by_host[worker.host].append(worker)

        for host in sorted(by_host):
            lookup = {worker.name: worker for worker in by_host[host]}
            for names in _batched([w.name for w in by_host[host]], batch_size):
                batch = [lookup[name] for name in names]
                try:
                    call(host, names)
                    on_success.extend(batch)
                except RemoteCallFailed as e:
                    failed = set(e.failed)
                    on_success.extend(w for w in batch if w.name not in failed)
                    on_failure.extend(w for w in batch if w.name in failed)
                    logger.error(f"Initial {action.value} failed on host {host} for {','.join(e.failed)}: {e}")

    return FleetInventory(running=running, disabled=disabled)


def discover(gateway: HostGateway,
             rng: Optional[random.Random] = None,
             shuffle: bool = True,
             batch_size: int = 1,
             max_workers: int = 4) -> FleetInventory:
    """
    Build the inventory at startup.

    The hosts' live running/stopped state is ignored. The
    population is shuffled, the first half is started and the second half
    stopped, so hosts do not all boot under the same load.

    Args:
        gateway: Host gateway to enumerate and drive
        rng: Random source for the shuffle
        shuffle: Shuffle before splitting; when False the listing order is kept
        batch_size: Maximum names per host call while forcing the split
        max_workers: Thread pool size for parallel enumeration

    Returns:
        Inventory reflecting the confirmed initial split
    """
    workers, failures = enumerate_workers(gateway, max_workers=max_workers)

    if shuffle:
        (rng or random.Random()).shuffle(workers)

    half = (len(workers) + 1) // 2
    to_run, to_disable = workers[:half], workers[half:]

    logger.info(f"Discovered {len(workers)} workers across {gateway.host_count} hosts "
                f"({len(failures)} hosts failed); forcing {len(to_run)} running, {len(to_disable)} disabled")

    inventory = force_assignment(gateway, to_run, to_disable, batch_size=batch_size)

    logger.info(f"Inventory ready: {inventory.running_count} running, {inventory.disabled_count} disabled")
    return inventory
