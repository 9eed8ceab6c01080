"""Invocation client.

Builds an envelope from a key and an input value, performs exactly one
transport round trip, and interprets what comes back: a value, a declared
error recovered through the ``ErrorRegistry``, or a transport failure.
Retries and caching belong to the caller.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from lamrpc.context import InvokeContext
from lamrpc.envelope import Envelope, decode_value, encode_value
from lamrpc.errors import EncodeError, ErrorPayload, ErrorRegistry, UnhandledError
from lamrpc.transport import Transport

logger = logging.getLogger(__name__)


class _NoData:
    def __repr__(self) -> str:
        return "NO_DATA"


NO_DATA: Any = _NoData()


class Result:
    """Outcome of one invocation, interpreted lazily."""

    def __init__(
        self,
        *,
        func_key: str,
        errors: ErrorRegistry,
        payload: bytes = b"",
        unhandled: bool = False,
        error: Exception | None = None,
    ) -> None:
        self.func_key = func_key
        self._errors = errors
        self._payload = payload
        self._unhandled = unhandled
        self._error = error

    @property
    def unhandled(self) -> bool:
        return self._unhandled

    def raw(self) -> tuple[bytes, Exception | None]:
        """Response bytes and the transport-level error, uninterpreted.

        For an unhandled failure the bytes are the encoded error payload and
        the error is an ``UnhandledError``.
        """
        if self._unhandled and self._error is None:
            return self._payload, UnhandledError()
        return self._payload, self._error

    def result(
        self,
        type_: Any = None,
        *,
        error_type: BaseException | type[BaseException] | None = None,
    ) -> Any:
        """Return the decoded value or raise the call's error.

        Args:
            type_: Type to decode the response into. When None the response
                is not decoded and None is returned.
            error_type: Exception class or instance the caller expects for a
                remote failure. Matched by identity before the registry.

        Raises:
            UnhandledError: The callee failed and sent no error payload.
            DecodeError: The response or error payload is malformed.
            Exception: The recovered remote error, or the transport error.
        """
        if self._unhandled:
            raise self._remote_error(error_type)
        if self._error is not None:
            raise self._error
        if type_ is None:
            return None
        return decode_value(self._payload, type_)

    def _remote_error(
        self,
        error_type: BaseException | type[BaseException] | None,
    ) -> BaseException:
        if not self._payload:
            return UnhandledError()
        payload = ErrorPayload.from_json(self._payload)
        recovered = self._errors.recover(payload, error_type)
        logger.debug(
            "%s failed remotely with %s, recovered as %s",
            self.func_key,
            payload.error_type,
            type(recovered).__name__,
        )
        return recovered


class FunctionHandle:
    """An ``Invoker`` bound to a single function key."""

    def __init__(self, invoker: Invoker, func_key: str) -> None:
        self._invoker = invoker
        self.func_key = func_key

    def invoke(self, data: Any = NO_DATA, *, context: InvokeContext | None = None) -> Result:
        return self._invoker.invoke(self.func_key, data, context=context)

    __call__ = invoke


class Invoker:
    """Calls remote handlers registered in a ``Mux`` through a transport.

    Usage:
        invoker = Invoker(HttpTransport("calc"), errors=registry)
        doubled = invoker.invoke("Calc_Double", 5).result(str)
    """

    def __init__(self, transport: Transport, *, errors: ErrorRegistry | None = None) -> None:
        self.transport = transport
        self.errors = errors if errors is not None else ErrorRegistry.with_defaults()

    def func(self, func_key: str) -> FunctionHandle:
        return FunctionHandle(self, func_key)

    def invoke(
        self,
        func_key: str,
        data: Any = NO_DATA,
        *,
        context: InvokeContext | None = None,
    ) -> Result:
        """Invoke ``func_key`` once.

        Args:
            func_key: Key the handler was registered under.
            data: Input value. Omit it to send an envelope without data;
                ``None`` is sent as JSON ``null``.
            context: Passed to the transport, which may use its deadline.

        Returns:
            A ``Result``. Encoding and transport failures are captured in it
            and raised from ``Result.result``.
        """
        try:
            raw_data = None if data is NO_DATA else encode_value(data)
            payload = Envelope(func_key=func_key, data=raw_data).encode()
        except EncodeError as e:
            return Result(func_key=func_key, errors=self.errors, error=e)
        except ValidationError as e:
            error = EncodeError(f"invalid envelope for {func_key!r}: {e}")
            return Result(func_key=func_key, errors=self.errors, error=error)

        try:
            response = self.transport.invoke(payload, context)
        except Exception as e:
            logger.warning("Transport failed invoking %s: %s", func_key, e)
            return Result(func_key=func_key, errors=self.errors, error=e)

        return Result(
            func_key=func_key,
            errors=self.errors,
            payload=response.payload,
            unhandled=response.unhandled,
        )
