"""
ArchiSteamFarm IPC gateway.

Each backend host runs an ASF instance exposing its IPC API. Worker names
are read from the free-text output of the 'status ASF' command, and bots
are started or stopped in batches through /Bot/<names>/Start|Stop.
"""

import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from fleet_control.config import HostConfig
from fleet_control.gateway import DiscoveryFailure, HostGateway, RemoteCallFailed, extract_worker_names

from .logger import get_logger

# ASF answers Success false for a bot that is already in the requested state
ALREADY_IN_STATE = {
    "Start": re.compile(r"already\s+(?:been\s+)?(?:running|started)", re.IGNORECASE),
    "Stop": re.compile(r"already\s+(?:been\s+)?stopped", re.IGNORECASE),
}
DONE_LINE = re.compile(r"^\s*Done!?\s*$", re.IGNORECASE)


class ASFGateway(HostGateway):
    """HostGateway backed by one httpx client per ASF host"""

    def __init__(self, hosts: Sequence[HostConfig], timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.hosts = list(hosts)
        self.logger = get_logger()
        self._clients: List[httpx.Client] = [
            httpx.Client(
                base_url=host.url,
                headers={
                    "Content-Type": "application/json",
                    "Authentication": host.password,
                },
                timeout=timeout,
                transport=transport,
            )
            for host in self.hosts
        ]

    @property
    def host_count(self) -> int:
        return len(self._clients)

    def host_label(self, host: int) -> str:
        if 0 <= host < len(self.hosts):
            return self.hosts[host].name or self.hosts[host].url
        return f"#{host}"

    def _client(self, host: int) -> httpx.Client:
        if not 0 <= host < len(self._clients):
            raise IndexError(f"Unknown host index {host} (have {len(self._clients)} hosts)")
        return self._clients[host]

    @staticmethod
    def _read_body(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {"Result": body}

    @classmethod
    def _check_body(cls, response: httpx.Response) -> Dict[str, Any]:
        """Raise if ASF reports the command as unsuccessful"""
        body = cls._read_body(response)
        if body.get("Success") is False:
            raise RuntimeError(body.get("Message") or "ASF reported failure")
        return body

    @staticmethod
    def _unconfirmed(names: Sequence[str], command: str, body: Dict[str, Any]) -> List[str]:
        """
        Names a Start/Stop reply with Success false did not actually confirm.

        A bot already in the requested state counts as confirmed. Replies
        keyed per bot under Result are judged per name. Otherwise each
        Message line must be "Done!" or an already-in-state reply; any other
        line fails the whole batch, since plain lines carry no bot name.
        """
        already = ALREADY_IN_STATE[command]
        result = body.get("Result")

        if isinstance(result, dict) and result:
            failed = []
            for name in names:
                entry = result.get(name)
                if not isinstance(entry, dict):
                    failed.append(name)
                elif entry.get("Success") is False and not already.search(str(entry.get("Message") or "")):
                    failed.append(name)
            return failed

        lines = [line for line in str(body.get("Message") or "").splitlines() if line.strip()]
        if lines and all(already.search(line) or DONE_LINE.match(line) for line in lines):
            return []
        return list(names)

    def get_status(self, host: int) -> Dict[str, Any]:
        """Fetch the raw ASF status document of a host"""
        try:
            response = self._client(host).get("/ASF")
            response.raise_for_status()
            return self._check_body(response)
        except (httpx.HTTPError, IndexError, RuntimeError, ValueError) as e:
            self.logger.error(f"Error fetching {self.host_label(host)} status: {e}")
            raise DiscoveryFailure(host, e) from e

    def list_worker_names(self, host: int) -> List[str]:
        try:
            response = self._client(host).post("/Command", json={"Command": "status ASF"})
            response.raise_for_status()
            body = self._check_body(response)
            result = body.get("Result")
            if result is not None and not isinstance(result, str):
                raise ValueError(f"expected status text, got {type(result).__name__}")
        except (httpx.HTTPError, IndexError, RuntimeError, ValueError) as e:
            self.logger.error(f"Error fetching bot names for {self.host_label(host)}: {e}")
            raise DiscoveryFailure(host, e) from e

        names = extract_worker_names(result)
        self.logger.debug(f"Host {self.host_label(host)} reports {len(names)} bots")
        return names

    def _bot_command(self, host: int, names: Sequence[str], command: str) -> None:
        if not names:
            return

        joined = ",".join(names)
        try:
            response = self._client(host).post(f"/Bot/{joined}/{command}")
            response.raise_for_status()
            body = self._read_body(response)
        except (httpx.HTTPError, IndexError, ValueError) as e:
            self.logger.error(f"Error running {command.lower()} for {joined} on {self.host_label(host)}: {e}")
            raise RemoteCallFailed(host, names, e) from e

        if body.get("Success") is not False:
            return

        failed = self._unconfirmed(names, command, body)
        if failed:
            cause = RuntimeError(body.get("Message") or "ASF reported failure")
            self.logger.error(f"Error running {command.lower()} for {','.join(failed)} "
                              f"on {self.host_label(host)}: {cause}")
            raise RemoteCallFailed(host, names, cause, failed=failed)
        self.logger.debug(f"Bots {joined} on {self.host_label(host)} were already in the requested state")

    def start_workers(self, host: int, names: Sequence[str]) -> None:
        self._bot_command(host, names, "Start")

    def stop_workers(self, host: int, names: Sequence[str]) -> None:
        self._bot_command(host, names, "Stop")

    def close(self) -> None:
        for client in self._clients:
            client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
