"""Tests for Pydantic configuration models.

These tests verify:
1. Default values
2. Read size, timeout and extension kind validation
3. Address validation for DialConfig
4. Configs are immutable
"""

import pytest
from pydantic import ValidationError

from nvimrpc.config import BatchConfig, DialConfig, EndpointConfig


class TestEndpointConfig:
    """Tests for EndpointConfig."""

    def test_default_values(self) -> None:
        config = EndpointConfig()
        assert config.read_size == 64 * 1024
        assert config.close_timeout == 5.0
        assert config.extensions == {}

    def test_read_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            EndpointConfig(read_size=0)

    def test_close_timeout_not_negative(self) -> None:
        with pytest.raises(ValidationError):
            EndpointConfig(close_timeout=-1)

    def test_extensions(self) -> None:
        decode = lambda p: bytes(p)
        config = EndpointConfig(extensions={3: decode})
        assert config.extensions[3] is decode

    def test_extension_kind_range(self) -> None:
        with pytest.raises(ValidationError, match="out of range"):
            EndpointConfig(extensions={256: bytes})

    def test_frozen(self) -> None:
        config = EndpointConfig()
        with pytest.raises(ValidationError):
            config.read_size = 10


class TestBatchConfig:
    """Tests for BatchConfig."""

    def test_default_method(self) -> None:
        assert BatchConfig().atomic_method == "nvim_call_atomic"

    def test_empty_method_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BatchConfig(atomic_method="")


class TestDialConfig:
    """Tests for DialConfig."""

    def test_unix_path(self) -> None:
        config = DialConfig(address="/tmp/nvim.sock")
        assert config.is_unix
        assert config.timeout == 10.0

    def test_socket_file_name(self) -> None:
        assert DialConfig(address="nvim.sock").is_unix

    def test_host_port(self) -> None:
        config = DialConfig(address="localhost:6666")
        assert not config.is_unix
        assert config.host_port == ("localhost", 6666)

    def test_ipv6_host_port(self) -> None:
        assert DialConfig(address="[::1]:6666").host_port == ("::1", 6666)

    @pytest.mark.parametrize("address", ["", "localhost", ":6666", "localhost:0", "localhost:99999", "host:abc"])
    def test_invalid_address(self, address: str) -> None:
        with pytest.raises(ValidationError):
            DialConfig(address=address)

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            DialConfig(address="localhost:6666", timeout=0)
