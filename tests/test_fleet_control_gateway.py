"""
Tests for the host gateway contract helpers.
"""

import pytest

from fleet_control.gateway import (
    HostGateway, RemoteCallFailed, DiscoveryFailure, extract_worker_names
)


class TestExtractWorkerNames:
    """Test parsing worker names from status output"""

    def test_extracts_in_order(self):
        """Test every <name> token is returned in order"""
        text = "<alpha> Bot is not running.\n<beta> Bot is farming.\n<gamma> Bot is idle."
        assert extract_worker_names(text) == ["alpha", "beta", "gamma"]

    def test_no_tokens(self):
        """Test text without tokens gives no names"""
        assert extract_worker_names("ASF is up to date") == []

    @pytest.mark.parametrize("text", [None, ""])
    def test_empty_input(self, text):
        """Test missing output gives no names"""
        assert extract_worker_names(text) == []

    def test_names_with_spaces_and_symbols(self):
        """Test anything between the brackets is a name"""
        assert extract_worker_names("<my bot-01> x <b_2>") == ["my bot-01", "b_2"]


class TestErrors:
    """Test gateway error types"""

    def test_remote_call_failed(self):
        """Test RemoteCallFailed carries host, names and cause"""
        cause = RuntimeError("timeout")
        error = RemoteCallFailed(1, ["a", "b"], cause)

        assert error.host == 1
        assert error.names == ["a", "b"]
        assert error.cause is cause
        assert "host 1" in str(error)
        assert "a,b" in str(error)
        assert error.failed == ["a", "b"]
        assert error.confirmed == []

    def test_remote_call_partly_failed(self):
        """Test a narrowed failure leaves the rest of the batch confirmed"""
        error = RemoteCallFailed(0, ["a", "b", "c"], RuntimeError("locked"), failed=["b"])

        assert error.failed == ["b"]
        assert error.confirmed == ["a", "c"]
        assert "failed for b" in str(error)

    def test_discovery_failure(self):
        """Test DiscoveryFailure message"""
        error = DiscoveryFailure(3)
        assert error.cause is None
        assert str(error) == "Discovery failed for host 3"


class TestHostGateway:
    """Test the abstract gateway"""

    def test_cannot_instantiate(self):
        """Test HostGateway is abstract"""
        with pytest.raises(TypeError):
            HostGateway()

    def test_close_is_optional(self, fake_gateway):
        """Test subclasses may rely on the default close"""
        class Minimal(HostGateway):
            host_count = 0

            def list_worker_names(self, host):
                return []

            def start_workers(self, host, names):
                pass

            def stop_workers(self, host, names):
                pass

        assert Minimal().close() is None
