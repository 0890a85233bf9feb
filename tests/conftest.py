"""
Pytest configuration and fixtures for fleet controller tests
"""
import logging
import random
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

import botfleet.logger
from fleet_control.gateway import DiscoveryFailure, HostGateway, RemoteCallFailed


class FakeGateway(HostGateway):
    """In-memory gateway that records every call it receives"""

    def __init__(self, hosts: Sequence[Sequence[str]]):
        self.hosts = [list(names) for names in hosts]
        self.calls: List[Tuple[str, int, List[str]]] = []
        self.failing_hosts: Set[int] = set()
        self.failing_names: Set[Tuple[int, str]] = set()
        self.unlistable_hosts: Set[int] = set()
        self.closed = False
        self.block: Optional[threading.Event] = None
        self.entered = threading.Event()

    @property
    def host_count(self) -> int:
        return len(self.hosts)

    def list_worker_names(self, host: int) -> List[str]:
        if host in self.unlistable_hosts:
            raise DiscoveryFailure(host, RuntimeError("host unreachable"))
        return list(self.hosts[host])

    def _call(self, action: str, host: int, names: Sequence[str]) -> None:
        self.calls.append((action, host, list(names)))
        self.entered.set()
        if self.block is not None:
            self.block.wait(5)
        if host in self.failing_hosts:
            raise RemoteCallFailed(host, names, RuntimeError(f"{action} refused"))
        failed = [name for name in names if (host, name) in self.failing_names]
        if failed:
            raise RemoteCallFailed(host, names, RuntimeError(f"{action} refused"), failed=failed)

    def start_workers(self, host: int, names: Sequence[str]) -> None:
        self._call("start", host, names)

    def stop_workers(self, host: int, names: Sequence[str]) -> None:
        self._call("stop", host, names)

    def close(self) -> None:
        self.closed = True

    def calls_for(self, action: str) -> List[Tuple[str, int, List[str]]]:
        return [call for call in self.calls if call[0] == action]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def rng():
    """Seeded random source so candidate draws are reproducible"""
    return random.Random(42)


@pytest.fixture
def fake_gateway():
    """Three hosts with four workers each"""
    return FakeGateway([
        [f"h0-bot{i}" for i in range(4)],
        [f"h1-bot{i}" for i in range(4)],
        [f"h2-bot{i}" for i in range(4)],
    ])


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo handler and propagation changes made by FleetLogger"""
    yield
    botfleet.logger._logger = None
    for name in ("botfleet", "fleet_control"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
