"""Error types and error-identity recovery for lamrpc.

Errors cross the invoke boundary as an ``ErrorPayload``::

    {"errorType": "FunctionNotFoundError", "errorMessage": "..."}

``errorType`` is the error's *identity*: its bare class name with the module
ignored. That is also what the AWS Lambda Python runtime reports for an
exception escaping a handler, so payloads produced by the runtime and by
``ErrorPayload.from_exception`` are interchangeable.

The caller turns a payload back into a local exception with an
``ErrorRegistry`` built at startup and passed to the ``Invoker``.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Base Error
# =============================================================================


class LamRpcError(Exception):
    """Base class for lamrpc errors.

    Attributes:
        message: Human-readable error message.
        context: Additional context for debugging.
    """

    error_type: str = "lamrpc"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message,
            **self.context,
        }


class InvalidSignatureError(LamRpcError):
    """A handler does not fit the supported call shapes.

    Raised at registration. Treat it as a wiring failure and fail at startup.
    """

    error_type = "invalid_signature"

    def __init__(self, message: str, *, func_key: str | None = None) -> None:
        context = {"func_key": func_key} if func_key else {}
        super().__init__(message, context=context)
        self.func_key = func_key


class FunctionNotFoundError(LamRpcError):
    """No handler is registered under the requested key."""

    error_type = "function_not_found"

    def __init__(self, message: str = "function not found", *, func_key: str | None = None) -> None:
        context = {"func_key": func_key} if func_key else {}
        super().__init__(message, context=context)
        self.func_key = func_key


class EncodeError(LamRpcError):
    """A value could not be serialized for the wire."""

    error_type = "encode"


class DecodeError(LamRpcError):
    """Wire content could not be deserialized into the expected type."""

    error_type = "decode"


class UnhandledError(LamRpcError):
    """The transport reported an unhandled function failure with no content."""

    error_type = "unhandled"

    def __init__(self, message: str = "Unhandled") -> None:
        super().__init__(message)


# =============================================================================
# Error Identity
# =============================================================================


def error_identity(err: BaseException | type[BaseException]) -> str:
    """Return the wire identity of an exception instance or class.

    The identity is the bare class name. Two unrelated classes with the same
    name share an identity.
    """
    cls = err if isinstance(err, type) else type(err)
    return cls.__name__


class _ErrorPayloadWire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    error_type: str = Field(..., alias="errorType")
    error_message: str = Field(default="", alias="errorMessage")


class ErrorPayload(LamRpcError):
    """A remote error as it travels over the wire.

    Returned to the caller as an opaque error when its identity cannot be
    recovered into a local exception.
    """

    error_type = "error_payload"

    def __init__(self, error_type: str, error_message: str = "") -> None:
        super().__init__(
            f"type: {error_type}, message: {error_message}",
            context={"error_type": error_type, "error_message": error_message},
        )
        # On a payload, error_type is the remote identity, not the category.
        self.error_type = error_type
        self.error_message = error_message

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorPayload:
        """Render an exception for transit."""
        if isinstance(exc, ErrorPayload):
            return cls(exc.error_type, exc.error_message)
        return cls(error_identity(exc), str(exc))

    @classmethod
    def from_json(cls, raw: bytes | str) -> ErrorPayload:
        try:
            wire = _ErrorPayloadWire.model_validate_json(raw)
        except ValidationError as e:
            raise DecodeError(f"invalid error payload: {e}") from e
        return cls(wire.error_type, wire.error_message)

    def to_json(self) -> bytes:
        return _ErrorPayloadWire(
            error_type=self.error_type,
            error_message=self.error_message,
        ).model_dump_json(by_alias=True).encode("utf-8")

    def matches(self, err: BaseException | type[BaseException]) -> bool:
        """True if ``err`` has the identity carried by this payload."""
        return self.error_type == error_identity(err)

    def __reduce__(self) -> tuple[Any, ...]:
        return (type(self), (self.error_type, self.error_message))


def unwrap_error_payload(exc: BaseException | None) -> ErrorPayload | None:
    """Find an ``ErrorPayload`` in an exception's cause/context chain."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, ErrorPayload):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return None


# =============================================================================
# Error Registry
# =============================================================================


class ErrorRegistry:
    """Maps error identities to canonical local exceptions.

    A registered value is either an exception instance, returned as-is on
    recovery (a sentinel), or an exception class, constructed with the remote
    message. Populate it at startup; recovery only reads it.

    Example:
        registry = ErrorRegistry.with_defaults()
        registry.register(TIMEOUT)          # sentinel, identity from its class
        registry.register(QuotaError)       # constructed per recovery
        registry.register(TIMEOUT, identity="timeoutError")
    """

    def __init__(self) -> None:
        self._known: dict[str, BaseException | type[BaseException]] = {}
        self._lock = threading.Lock()

    @classmethod
    def with_defaults(cls) -> ErrorRegistry:
        """Registry pre-populated with the errors lamrpc itself sends."""
        registry = cls()
        registry.register(FunctionNotFoundError)
        return registry

    def register(
        self,
        error: BaseException | type[BaseException],
        *,
        identity: str | None = None,
    ) -> None:
        if isinstance(error, type):
            if not issubclass(error, BaseException):
                raise TypeError(f"not an exception class: {error!r}")
        elif not isinstance(error, BaseException):
            raise TypeError(f"not an exception: {error!r}")

        key = identity or error_identity(error)
        with self._lock:
            previous = self._known.get(key)
            self._known[key] = error
        if previous is not None and previous is not error:
            logger.warning("Error identity %r re-registered, replacing %r", key, previous)

    def lookup(self, identity: str) -> BaseException | type[BaseException] | None:
        return self._known.get(identity)

    def identities(self) -> list[str]:
        return sorted(self._known)

    def __contains__(self, identity: object) -> bool:
        return identity in self._known

    def recover(
        self,
        payload: ErrorPayload,
        target: BaseException | type[BaseException] | None = None,
    ) -> BaseException:
        """Turn an ``ErrorPayload`` back into the most specific local error.

        Args:
            payload: The decoded remote error.
            target: Optional exception class or instance the caller expects.
                Matched by identity before the registry is consulted.

        Returns:
            The reconstructed target, the registered error, or ``payload``
            itself when the identity is unknown or the registered class cannot
            be built from it.
        """
        if target is not None and payload.matches(target):
            recovered = _reconstruct(target, payload)
            if recovered is not None:
                return recovered

        known = self.lookup(payload.error_type)
        if known is None:
            logger.debug("Unknown remote error identity %r", payload.error_type)
            return payload
        if isinstance(known, type):
            try:
                return _construct(known, payload)
            except (TypeError, ValueError) as e:
                logger.warning("Cannot rebuild registered %s from payload: %s", known.__name__, e)
                return payload
        return known


def _reconstruct(
    target: BaseException | type[BaseException],
    payload: ErrorPayload,
) -> BaseException | None:
    """Build ``target`` from ``payload``; None cancels the match."""
    if isinstance(target, type):
        try:
            return _construct(target, payload)
        except (TypeError, ValueError) as e:
            logger.debug("Cannot rebuild %s from payload: %s", target.__name__, e)
            return None

    load = getattr(target, "load_error_payload", None)
    if callable(load):
        try:
            load(payload)
        except (TypeError, ValueError) as e:
            logger.debug("Cannot load payload into %r: %s", target, e)
            return None
    return target


def _construct(cls: type[BaseException], payload: ErrorPayload) -> BaseException:
    from_payload = getattr(cls, "from_error_payload", None)
    if callable(from_payload):
        return from_payload(payload)
    return cls(payload.error_message)
