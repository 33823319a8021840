"""Pydantic configuration models for nvimrpc.

These are only used at startup (endpoint construction, dialing). Message
handling never touches them on the hot path.
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EndpointConfig(BaseModel):
    """Configuration options for an RPC endpoint.

    Attributes:
        read_size: Number of bytes requested from the transport per read.
        close_timeout: Seconds close() waits for running request handlers.
        extensions: Extension decoders used when decoding into ``Any``,
            keyed by extension kind.
    """

    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,  # Allow Callable values
    )

    read_size: int = Field(
        default=64 * 1024,
        gt=0,
        description="Bytes requested from the transport per read",
    )
    close_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait for request handlers on close",
    )
    extensions: dict[int, Callable[[bytes], Any]] = Field(
        default_factory=dict,
        description="Extension decoders keyed by kind",
    )

    @field_validator("extensions")
    @classmethod
    def validate_extensions(cls, v: dict[int, Callable[[bytes], Any]]) -> dict[int, Callable[[bytes], Any]]:
        """Extension kinds must fit in one byte."""
        for kind in v:
            if not 0 <= kind <= 0xFF:
                raise ValueError(f"extension kind {kind} out of range 0-255")
        return v


class BatchConfig(BaseModel):
    """Configuration for batch execution.

    Attributes:
        atomic_method: Peer method that runs a list of calls atomically.
    """

    model_config = ConfigDict(frozen=True)

    atomic_method: str = Field(
        default="nvim_call_atomic",
        min_length=1,
        description="Method executing [method, args] pairs atomically",
    )


class DialConfig(BaseModel):
    """Configuration for connecting to a peer.

    Attributes:
        address: A unix socket path, or ``host:port`` for TCP.
        timeout: Connection timeout in seconds (must be positive).
    """

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="Unix socket path or host:port")
    timeout: float = Field(
        default=10.0,
        gt=0,
        description="Connection timeout in seconds",
    )

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate address format."""
        if not v:
            raise ValueError("address cannot be empty")
        if cls.is_unix_path(v):
            return v
        host, sep, port = v.rpartition(":")
        if not sep or not host:
            raise ValueError("address must be a socket path or host:port")
        if not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError(f"invalid port: {port!r}")
        return v

    @staticmethod
    def is_unix_path(address: str) -> bool:
        return "/" in address or "\\" in address or address.endswith(".sock")

    @property
    def is_unix(self) -> bool:
        return self.is_unix_path(self.address)

    @property
    def host_port(self) -> tuple[str, int]:
        host, _, port = self.address.rpartition(":")
        return host.strip("[]"), int(port)
