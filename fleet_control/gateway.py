"""
Host gateway contract for the fleet controller.

The controller never talks to a backend host directly. It depends on a
HostGateway implementation that can enumerate the workers a host knows
about and start or stop a batch of them by name.
"""

import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

# Worker names appear as <name> tokens in the host's free-text status output
WORKER_NAME_PATTERN = re.compile(r"<([^>]+)>")


class RemoteCallFailed(Exception):
    """
    Raised when a start/stop call to a host did not succeed.

    `failed` holds the names the host did not confirm. It defaults to the
    whole batch; a host that reports per-worker results may narrow it, and
    the remaining names count as confirmed.
    """

    def __init__(self, host: int, names: Sequence[str], cause: Optional[BaseException] = None,
                 failed: Optional[Sequence[str]] = None):
        self.host = host
        self.names = list(names)
        self.cause = cause
        self.failed = list(failed) if failed is not None else list(self.names)
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Remote call to host {host} failed for {','.join(self.failed) or '<none>'}{detail}")

    @property
    def confirmed(self) -> List[str]:
        """Names in the batch that the host did confirm"""
        failed = set(self.failed)
        return [name for name in self.names if name not in failed]


class DiscoveryFailure(Exception):
    """Raised when the worker names of a host cannot be enumerated"""

    def __init__(self, host: int, cause: Optional[BaseException] = None):
        self.host = host
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Discovery failed for host {host}{detail}")


def extract_worker_names(status_text: Optional[str]) -> List[str]:
    """Extract all <name> tokens from a status response, in order of appearance"""
    if not status_text:
        return []
    return WORKER_NAME_PATTERN.findall(status_text)


class HostGateway(ABC):
    """Abstract per-host capability to list, start and stop workers"""

    @property
    @abstractmethod
    def host_count(self) -> int:
        """Number of hosts behind this gateway; hosts are indexed 0..host_count-1"""
        pass

    @abstractmethod
    def list_worker_names(self, host: int) -> List[str]:
        """
        Enumerate the worker names known to a host.

        Raises:
            DiscoveryFailure: If the host cannot be queried
        """
        pass

    @abstractmethod
    def start_workers(self, host: int, names: Sequence[str]) -> None:
        """
        Start a batch of named workers on one host.

        Raises:
            RemoteCallFailed: If the host did not confirm the start
        """
        pass

    @abstractmethod
    def stop_workers(self, host: int, names: Sequence[str]) -> None:
        """
        Stop a batch of named workers on one host.

        Raises:
            RemoteCallFailed: If the host did not confirm the stop
        """
        pass

    def close(self) -> None:
        """Release any resources held by the gateway"""
        pass
