"""
Tests for the ASF IPC gateway.
"""

import json
import random
import pytest
import httpx

from botfleet.asf_gateway import ASFGateway
from fleet_control.config import HostConfig
from fleet_control.gateway import DiscoveryFailure, RemoteCallFailed
from fleet_control.inventory import discover


STATUS_TEXT = (
    "<alpha> Bot is not running.\n"
    "<beta> Bot is currently idling.\n"
    "<gamma> Bot is farming."
)


class RecordingHandler:
    """MockTransport handler returning canned responses per path"""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(200, json={"Success": True, "Message": "OK", "Result": None})
        if isinstance(response, Exception):
            raise response
        return response


def make_gateway(handler, hosts=None):
    hosts = hosts or [
        HostConfig(url="http://asf-1:1242/Api", password="pw1", name="asf-1"),
        HostConfig(url="http://asf-2:1242/Api", password="pw2"),
    ]
    return ASFGateway(hosts, timeout=5, transport=httpx.MockTransport(handler))


class TestASFGateway:
    """Test ASFGateway"""

    def test_host_count_and_labels(self):
        gateway = make_gateway(RecordingHandler())

        assert gateway.host_count == 2
        assert gateway.host_label(0) == "asf-1"
        assert gateway.host_label(1) == "http://asf-2:1242/Api"
        assert gateway.host_label(7) == "#7"

    def test_list_worker_names(self):
        """Test names are parsed from the status command result"""
        handler = RecordingHandler({
            ("POST", "/Api/Command"): httpx.Response(200, json={"Success": True, "Result": STATUS_TEXT}),
        })
        gateway = make_gateway(handler)

        assert gateway.list_worker_names(0) == ["alpha", "beta", "gamma"]

        request = handler.requests[0]
        assert str(request.url) == "http://asf-1:1242/Api/Command"
        assert json.loads(request.content) == {"Command": "status ASF"}
        assert request.headers["Authentication"] == "pw1"
        assert request.headers["Content-Type"] == "application/json"

    def test_uses_per_host_password(self):
        handler = RecordingHandler()
        gateway = make_gateway(handler)

        gateway.list_worker_names(1)

        assert handler.requests[0].headers["Authentication"] == "pw2"
        assert handler.requests[0].url.host == "asf-2"

    def test_empty_result(self):
        """Test a status without names lists nothing"""
        gateway = make_gateway(RecordingHandler())
        assert gateway.list_worker_names(0) == []

    def test_list_http_error(self):
        """Test HTTP errors become DiscoveryFailure"""
        handler = RecordingHandler({("POST", "/Api/Command"): httpx.Response(401)})
        gateway = make_gateway(handler)

        with pytest.raises(DiscoveryFailure) as exc_info:
            gateway.list_worker_names(0)

        assert exc_info.value.host == 0
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)

    def test_list_connection_error(self):
        handler = RecordingHandler({("POST", "/Api/Command"): httpx.ConnectError("refused")})
        gateway = make_gateway(handler)

        with pytest.raises(DiscoveryFailure):
            gateway.list_worker_names(1)

    def test_list_unknown_host(self):
        gateway = make_gateway(RecordingHandler())

        with pytest.raises(DiscoveryFailure):
            gateway.list_worker_names(5)

    def test_start_workers(self):
        """Test a batch start is one call with comma-joined names"""
        handler = RecordingHandler()
        gateway = make_gateway(handler)

        gateway.start_workers(0, ["alpha", "beta"])

        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/Api/Bot/alpha,beta/Start"

    def test_stop_workers(self):
        handler = RecordingHandler()
        gateway = make_gateway(handler)

        gateway.stop_workers(1, ["gamma"])

        assert handler.requests[0].url.path == "/Api/Bot/gamma/Stop"

    def test_empty_batch_sends_nothing(self):
        handler = RecordingHandler()
        gateway = make_gateway(handler)

        gateway.start_workers(0, [])

        assert handler.requests == []

    def test_unsuccessful_body_fails_call(self):
        """Test ASF reporting Success false is a failed call"""
        handler = RecordingHandler({
            ("POST", "/Api/Bot/alpha/Start"): httpx.Response(200, json={"Success": False, "Message": "Bot busy"}),
        })
        gateway = make_gateway(handler)

        with pytest.raises(RemoteCallFailed, match="Bot busy") as exc_info:
            gateway.start_workers(0, ["alpha"])

        assert exc_info.value.names == ["alpha"]
        assert exc_info.value.host == 0

    def test_server_error_fails_call(self):
        handler = RecordingHandler({("POST", "/Api/Bot/alpha/Stop"): httpx.Response(500)})
        gateway = make_gateway(handler)

        with pytest.raises(RemoteCallFailed):
            gateway.stop_workers(0, ["alpha"])

    def test_timeout_fails_call(self):
        handler = RecordingHandler({("POST", "/Api/Bot/alpha/Start"): httpx.ReadTimeout("slow")})
        gateway = make_gateway(handler)

        with pytest.raises(RemoteCallFailed):
            gateway.start_workers(0, ["alpha"])

    def test_get_status(self):
        """Test the ASF status document is returned"""
        handler = RecordingHandler({
            ("GET", "/Api/ASF"): httpx.Response(200, json={"Success": True, "Result": {"Version": "5.5"}}),
        })
        gateway = make_gateway(handler)

        status = gateway.get_status(0)

        assert status["Result"] == {"Version": "5.5"}

    def test_empty_body_is_success(self):
        handler = RecordingHandler({("POST", "/Api/Bot/alpha/Start"): httpx.Response(200)})
        gateway = make_gateway(handler)

        gateway.start_workers(0, ["alpha"])

    def test_context_manager_closes_clients(self):
        with make_gateway(RecordingHandler()) as gateway:
            clients = list(gateway._clients)

        assert all(client.is_closed for client in clients)


class ASFHost:
    """MockTransport handler that keeps live bot state and answers like ASF"""

    MESSAGES = {
        "Start": "This bot is already running!",
        "Stop": "This bot has already been stopped!",
    }

    def __init__(self, running, stopped=(), refusing=(), per_bot=False):
        self.running = set(running)
        self.stopped = set(stopped)
        self.refusing = set(refusing)
        self.per_bot = per_bot

    def __call__(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.split("/")
        if parts[-1] == "Command":
            status = "\n".join(f"<{name}> Bot status." for name in sorted(self.running | self.stopped))
            return httpx.Response(200, json={"Success": True, "Result": status})

        command, names = parts[-1], parts[-2].split(",")
        results = {name: self._apply(command, name) for name in names}
        success = all(ok for ok, _ in results.values())
        body = {"Success": success, "Message": "\n".join(message for _, message in results.values())}
        if self.per_bot:
            body["Result"] = {name: {"Success": ok, "Message": message} for name, (ok, message) in results.items()}
        return httpx.Response(200, json=body)

    def _apply(self, command, name):
        if name in self.refusing:
            return False, "Bot is locked by another process"
        live = name in self.running
        if (command == "Start") == live:
            return False, self.MESSAGES[command]
        if command == "Start":
            self.stopped.discard(name)
            self.running.add(name)
        else:
            self.running.discard(name)
            self.stopped.add(name)
        return True, "Done!"


def asf_gateway(host):
    return ASFGateway([HostConfig(url="http://asf-1:1242/Api", password="pw")],
                      timeout=5, transport=httpx.MockTransport(host))


class TestIdempotentReplies:
    """Test ASF replies for bots already in the requested state"""

    def test_already_running_is_confirmed(self):
        """Test starting a live bot is not a failure"""
        gateway = asf_gateway(ASFHost(running=["a"]))

        gateway.start_workers(0, ["a"])

    def test_already_stopped_is_confirmed(self):
        gateway = asf_gateway(ASFHost(running=[], stopped=["a"]))

        gateway.stop_workers(0, ["a"])

    def test_already_running_on_stop_is_not_idempotent(self):
        """Test only the message matching the command counts as confirmed"""
        handler = RecordingHandler({
            ("POST", "/Api/Bot/a/Stop"): httpx.Response(
                200, json={"Success": False, "Message": "This bot is already running!"}),
        })
        gateway = make_gateway(handler)

        with pytest.raises(RemoteCallFailed):
            gateway.stop_workers(0, ["a"])

    def test_mixed_batch_of_idempotent_replies(self):
        """Test a batch where some bots were already running succeeds"""
        host = ASFHost(running=["a"], stopped=["b"])
        gateway = asf_gateway(host)

        gateway.start_workers(0, ["a", "b"])

        assert host.running == {"a", "b"}

    def test_per_bot_result_narrows_failure(self):
        """Test per-bot results fail only the bots that really failed"""
        host = ASFHost(running=["a"], stopped=["b", "c"], refusing=["c"], per_bot=True)
        gateway = asf_gateway(host)

        with pytest.raises(RemoteCallFailed, match="locked") as exc_info:
            gateway.start_workers(0, ["a", "b", "c"])

        assert exc_info.value.failed == ["c"]
        assert exc_info.value.confirmed == ["a", "b"]

    def test_unattributable_failure_fails_batch(self):
        """Test a plain message with a real failure fails every name"""
        host = ASFHost(running=["a"], stopped=["c"], refusing=["c"])
        gateway = asf_gateway(host)

        with pytest.raises(RemoteCallFailed) as exc_info:
            gateway.start_workers(0, ["a", "c"])

        assert exc_info.value.failed == ["a", "c"]

    def test_discovery_matches_live_state(self):
        """Test booting against hosts whose bots all run keeps inventory and hosts in agreement"""
        host = ASFHost(running=["a", "b", "c", "d"])
        gateway = asf_gateway(host)

        inventory = discover(gateway, rng=random.Random(1))

        assert inventory.running_count == len(host.running) == 2
        assert inventory.disabled_count == len(host.stopped) == 2
        assert {w.name for w in inventory.running} == host.running

    def test_discovery_with_batches(self):
        host = ASFHost(running=["a", "b", "c", "d", "e"])
        gateway = asf_gateway(host)

        inventory = discover(gateway, rng=random.Random(7), batch_size=3)

        assert {w.name for w in inventory.running} == host.running
        assert {w.name for w in inventory.disabled} == host.stopped


class TestStatusParsing:
    """Test malformed status replies"""

    def test_non_text_result_is_discovery_failure(self):
        handler = RecordingHandler({
            ("POST", "/Api/Command"): httpx.Response(200, json={"Success": True, "Result": {"bots": 3}}),
        })
        gateway = make_gateway(handler)

        with pytest.raises(DiscoveryFailure) as exc_info:
            gateway.list_worker_names(0)

        assert isinstance(exc_info.value.cause, ValueError)

    def test_list_result_is_discovery_failure(self):
        handler = RecordingHandler({("POST", "/Api/Command"): httpx.Response(200, json=["<a>"])})
        gateway = make_gateway(handler)

        with pytest.raises(DiscoveryFailure):
            gateway.list_worker_names(0)
