"""lamrpc - call named functions through a synchronous invoke transport.

The callee registers handlers of varying shapes in a ``Mux``; the caller
uses an ``Invoker`` to send an envelope and get back a typed value or a
recovered exception.
"""

from __future__ import annotations

from lamrpc.context import InvokeContext
from lamrpc.envelope import ENVELOPE_FORMAT, Envelope
from lamrpc.errors import (
    DecodeError,
    EncodeError,
    ErrorPayload,
    ErrorRegistry,
    FunctionNotFoundError,
    InvalidSignatureError,
    LamRpcError,
    UnhandledError,
    error_identity,
    unwrap_error_payload,
)
from lamrpc.invoker import NO_DATA, FunctionHandle, Invoker, Result
from lamrpc.mux import HandlerDescriptor, InputShape, Mux, OutputShape
from lamrpc.transport import HttpTransport, LocalTransport, Transport, TransportResponse

__all__ = [
    # Envelope
    "ENVELOPE_FORMAT",
    "Envelope",
    # Context
    "InvokeContext",
    # Errors
    "LamRpcError",
    "InvalidSignatureError",
    "FunctionNotFoundError",
    "EncodeError",
    "DecodeError",
    "UnhandledError",
    "ErrorPayload",
    "ErrorRegistry",
    "error_identity",
    "unwrap_error_payload",
    # Mux
    "Mux",
    "HandlerDescriptor",
    "InputShape",
    "OutputShape",
    # Invoker
    "Invoker",
    "FunctionHandle",
    "Result",
    "NO_DATA",
    # Transports
    "Transport",
    "TransportResponse",
    "LocalTransport",
    "HttpTransport",
]
