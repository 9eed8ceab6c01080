"""Transports carry an encoded envelope to the callee and bring back the reply.

lamrpc treats a transport as an opaque boundary with a single blocking
operation. Two are provided:

- ``LocalTransport`` calls a ``Mux`` in-process and renders escaped
  exceptions the way a function runtime would. Useful for tests and for
  running callee and caller in one process.
- ``HttpTransport`` talks to the AWS Lambda invoke API (or a local emulator
  speaking the same protocol). Authentication is the host's business.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import httpx

from lamrpc.context import InvokeContext
from lamrpc.errors import ErrorPayload
from lamrpc.settings import settings

if TYPE_CHECKING:
    from lamrpc.mux import Mux

logger = logging.getLogger(__name__)

FUNCTION_ERROR_HEADER = "X-Amz-Function-Error"


@dataclass(frozen=True)
class TransportResponse:
    """Raw reply from one invocation.

    Attributes:
        payload: Response body. For an unhandled failure this is the
            encoded ``ErrorPayload`` when the callee produced one.
        unhandled: True when the callee failed outside the handler's
            declared result.
    """

    payload: bytes = b""
    unhandled: bool = False


class Transport(Protocol):
    """Anything that can perform one synchronous invocation.

    Transport-level failures (network, HTTP status, auth) are raised.
    """

    def invoke(self, payload: bytes, context: InvokeContext | None = None) -> TransportResponse:
        ...


class LocalTransport:
    """In-process transport that dispatches straight into a ``Mux``."""

    def __init__(self, mux: Mux) -> None:
        self._mux = mux

    def invoke(self, payload: bytes, context: InvokeContext | None = None) -> TransportResponse:
        try:
            return TransportResponse(payload=self._mux.dispatch(payload, context))
        except Exception as e:
            logger.debug("Local invocation failed: %s: %s", type(e).__name__, e)
            return TransportResponse(
                payload=ErrorPayload.from_exception(e).to_json(),
                unhandled=True,
            )


class HttpTransport:
    """Invoke a deployed function over the Lambda invoke HTTP API.

    Example:
        transport = HttpTransport("orders", endpoint_url="http://localhost:9001")
        invoker = Invoker(transport)
    """

    def __init__(
        self,
        function_name: str | None = None,
        *,
        endpoint_url: str | None = None,
        timeout_seconds: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.function_name = function_name or settings.function_name
        self._base_url = (endpoint_url or settings.endpoint_url).rstrip("/")
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.timeout_seconds
        self._client = client

    @property
    def url(self) -> str:
        return f"{self._base_url}/2015-03-31/functions/{self.function_name}/invocations"

    def _timeout_for(self, context: InvokeContext | None) -> float:
        remaining = context.remaining_seconds() if context is not None else None
        if remaining is None:
            return self._timeout
        return min(self._timeout, remaining)

    def invoke(self, payload: bytes, context: InvokeContext | None = None) -> TransportResponse:
        timeout = self._timeout_for(context)
        if timeout <= 0.0:
            raise httpx.TimeoutException(f"deadline passed before invoking {self.function_name}")
        headers = {"Content-Type": "application/json"}
        if context is not None:
            headers["X-Request-Id"] = context.request_id

        if self._client is not None:
            res = self._client.post(self.url, content=payload, headers=headers, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                res = client.post(self.url, content=payload, headers=headers)
        res.raise_for_status()

        function_error = res.headers.get(FUNCTION_ERROR_HEADER)
        if function_error:
            logger.debug("%s reported function error %r", self.function_name, function_error)
        return TransportResponse(payload=res.content, unhandled=bool(function_error))
