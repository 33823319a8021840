"""nvimrpc - MessagePack and MessagePack-RPC for Python

This package provides a streaming MessagePack codec that maps wire values to
typed Python values (dataclasses, typed containers, sized integers), and an
asyncio MessagePack-RPC endpoint with atomic batches and pipelines, as used
by the Neovim editor.
"""

from nvimrpc.config import (
    BatchConfig,
    DialConfig,
    EndpointConfig,
)
from nvimrpc.error import (
    BatchError,
    DecodeConvertError,
    EncodeTypeError,
    EndOfStream,
    ErrorCode,
    ErrorList,
    FieldTagError,
    LongValue,
    MsgpackError,
    NvimError,
    PeerError,
    RpcError,
    UnexpectedEof,
    UnknownCode,
)
from nvimrpc.types import (
    Extension,
    ExtensionMap,
    Int8,
    Int16,
    Int32,
    Int64,
    IntRange,
    Marshaler,
    Raw,
    Uint8,
    Uint16,
    Uint32,
    Uint64,
    Unmarshaler,
)
from nvimrpc.wire import Decoder, Encoder, Type
from nvimrpc.fields import FieldInfo, fields_for_type, msgpack_field
from nvimrpc.value_codec import ValueCodec, packb, unpackb
from nvimrpc.endpoint import Call, Endpoint, Transport
from nvimrpc.batch import Batch, BatchResult
from nvimrpc.pipeline import Pipeline, PipelineResult
from nvimrpc.handles import Buffer, Tabpage, Window, handle_extensions
from nvimrpc.transport import StreamTransport, connect_stdio, connect_tcp, connect_unix, dial
from nvimrpc.nvim import ApiInfo, Nvim, fix_error

__version__ = "0.1.0"

__all__ = [
    # Codec
    "Encoder",
    "Decoder",
    "Type",
    "ValueCodec",
    "packb",
    "unpackb",
    "msgpack_field",
    "fields_for_type",
    "FieldInfo",
    # Host types
    "Extension",
    "ExtensionMap",
    "IntRange",
    "Int8",
    "Int16",
    "Int32",
    "Int64",
    "Uint8",
    "Uint16",
    "Uint32",
    "Uint64",
    "Raw",
    "Marshaler",
    "Unmarshaler",
    # RPC
    "Endpoint",
    "Call",
    "Transport",
    "Batch",
    "BatchResult",
    "Pipeline",
    "PipelineResult",
    # Transports
    "StreamTransport",
    "connect_tcp",
    "connect_unix",
    "connect_stdio",
    "dial",
    # Editor client
    "Nvim",
    "ApiInfo",
    "Buffer",
    "Window",
    "Tabpage",
    "handle_extensions",
    "fix_error",
    # Configuration
    "EndpointConfig",
    "BatchConfig",
    "DialConfig",
    # Errors
    "MsgpackError",
    "EndOfStream",
    "UnexpectedEof",
    "UnknownCode",
    "LongValue",
    "EncodeTypeError",
    "FieldTagError",
    "DecodeConvertError",
    "ErrorCode",
    "RpcError",
    "PeerError",
    "BatchError",
    "ErrorList",
    "NvimError",
]
