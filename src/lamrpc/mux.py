"""Handler registry ("Mux").

Maps function keys to handlers of heterogeneous signatures and dispatches
encoded envelopes to them.

A handler takes at most two positional parameters and returns at most two
results:

    def ping() -> None
    def health(ctx: InvokeContext) -> Exception | None
    def double(n: int) -> int
    def double(ctx: InvokeContext, n: int) -> tuple[str, Exception | None]

When there are two parameters the first must be the context; when there are
two results the second must be the error slot. The shape is classified once
at registration so dispatch never re-inspects the handler.
"""

from __future__ import annotations

import inspect
import logging
import threading
import types
import typing
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import TypeAdapter
from pydantic.errors import PydanticSchemaGenerationError
from pydantic_core import PydanticSerializationError, from_json, to_json

from lamrpc.context import InvokeContext
from lamrpc.envelope import Envelope
from lamrpc.errors import EncodeError, FunctionNotFoundError, InvalidSignatureError

logger = logging.getLogger(__name__)


class InputShape(Enum):
    NONE = "none"
    CONTEXT_ONLY = "context_only"
    DATA_ONLY = "data_only"
    CONTEXT_AND_DATA = "context_and_data"


class OutputShape(Enum):
    NONE = "none"
    ERROR_ONLY = "error_only"
    DATA_ONLY = "data_only"
    DATA_AND_ERROR = "data_and_error"


@dataclass(frozen=True)
class HandlerDescriptor:
    """A registered handler and its classified call shape."""

    func_key: str
    func: Callable[..., Any]
    input_shape: InputShape
    output_shape: OutputShape
    input_type: Any = None
    output_type: Any = None
    input_adapter: TypeAdapter[Any] | None = field(default=None, repr=False, compare=False)
    output_adapter: TypeAdapter[Any] | None = field(default=None, repr=False, compare=False)

    @property
    def wants_context(self) -> bool:
        return self.input_shape in (InputShape.CONTEXT_ONLY, InputShape.CONTEXT_AND_DATA)

    @property
    def wants_data(self) -> bool:
        return self.input_shape in (InputShape.DATA_ONLY, InputShape.CONTEXT_AND_DATA)


# =============================================================================
# Signature Classification
# =============================================================================


_POSITIONAL = (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)


def is_context_type(annotation: Any) -> bool:
    return annotation is InvokeContext


def is_error_type(annotation: Any) -> bool:
    """True for ``Exception`` and ``Exception | None``."""
    if annotation is Exception:
        return True
    if typing.get_origin(annotation) in (typing.Union, types.UnionType):
        members = [a for a in typing.get_args(annotation) if a is not type(None)]
        return len(members) == 1 and members[0] is Exception
    return False


def _output_types(annotation: Any) -> list[Any]:
    if annotation is None or annotation is type(None):
        return []
    if typing.get_origin(annotation) is tuple:
        args = typing.get_args(annotation)
        if len(args) == 1 or (len(args) == 2 and args[1] is Ellipsis):
            return [annotation]
        return list(args)
    return [annotation]


def _resolve_hints(func: Callable[..., Any], func_key: str) -> dict[str, Any]:
    target = func if inspect.isroutine(func) else getattr(func, "__call__", func)
    try:
        return typing.get_type_hints(target)
    except (NameError, TypeError) as e:
        raise InvalidSignatureError(
            f"cannot resolve annotations of {func_key!r}: {e}", func_key=func_key
        ) from e


def classify(func_key: str, func: Callable[..., Any]) -> HandlerDescriptor:
    """Inspect ``func`` and build its descriptor.

    Raises:
        InvalidSignatureError: If ``func`` does not fit the supported shapes.
    """
    if not func_key:
        raise InvalidSignatureError("function key must not be empty")
    if not callable(func):
        raise InvalidSignatureError(f"{func_key!r} is not a function", func_key=func_key)

    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError) as e:
        raise InvalidSignatureError(
            f"cannot inspect signature of {func_key!r}: {e}", func_key=func_key
        ) from e
    hints = _resolve_hints(func, func_key)

    params = []
    for param in signature.parameters.values():
        if param.kind in _POSITIONAL:
            params.append(param)
        elif param.kind is inspect.Parameter.KEYWORD_ONLY and param.default is not param.empty:
            continue
        else:
            raise InvalidSignatureError(
                f"{func_key!r}: parameter {param.name!r} must be positional", func_key=func_key
            )
    in_types = [hints.get(p.name, Any) for p in params]

    input_type = None
    if len(in_types) == 0:
        input_shape = InputShape.NONE
    elif len(in_types) == 1:
        if is_context_type(in_types[0]):
            input_shape = InputShape.CONTEXT_ONLY
        else:
            input_shape = InputShape.DATA_ONLY
            input_type = in_types[0]
    elif len(in_types) == 2:
        if not is_context_type(in_types[0]):
            raise InvalidSignatureError(
                f"{func_key!r}: with two parameters the first must be InvokeContext",
                func_key=func_key,
            )
        input_shape = InputShape.CONTEXT_AND_DATA
        input_type = in_types[1]
    else:
        raise InvalidSignatureError(
            f"{func_key!r}: takes {len(in_types)} parameters, at most 2 allowed",
            func_key=func_key,
        )

    out_types = _output_types(hints.get("return", Any))

    output_type = None
    if len(out_types) == 0:
        output_shape = OutputShape.NONE
    elif len(out_types) == 1:
        if is_error_type(out_types[0]):
            output_shape = OutputShape.ERROR_ONLY
        else:
            output_shape = OutputShape.DATA_ONLY
            output_type = out_types[0]
    elif len(out_types) == 2:
        if not is_error_type(out_types[1]):
            raise InvalidSignatureError(
                f"{func_key!r}: with two results the second must be Exception | None",
                func_key=func_key,
            )
        output_shape = OutputShape.DATA_AND_ERROR
        output_type = out_types[0]
    else:
        raise InvalidSignatureError(
            f"{func_key!r}: returns {len(out_types)} results, at most 2 allowed",
            func_key=func_key,
        )

    return HandlerDescriptor(
        func_key=func_key,
        func=func,
        input_shape=input_shape,
        output_shape=output_shape,
        input_type=input_type,
        output_type=output_type,
        input_adapter=_adapter(func_key, input_type) if input_shape in (
            InputShape.DATA_ONLY, InputShape.CONTEXT_AND_DATA
        ) else None,
        output_adapter=_adapter(func_key, output_type) if output_shape in (
            OutputShape.DATA_ONLY, OutputShape.DATA_AND_ERROR
        ) else None,
    )


def _adapter(func_key: str, type_: Any) -> TypeAdapter[Any]:
    try:
        return TypeAdapter(type_)
    except PydanticSchemaGenerationError as e:
        raise InvalidSignatureError(
            f"{func_key!r}: type {type_!r} cannot cross the wire: {e}", func_key=func_key
        ) from e


# =============================================================================
# Readers-Writer Lock
# =============================================================================


class _RWLock:
    """Many readers or one writer. Writers wait for active readers to leave."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# =============================================================================
# Mux
# =============================================================================


class Mux:
    """Routes encoded envelopes to registered handlers.

    Usage:
        mux = Mux()

        @mux.handler("Calc_Double")
        def double(ctx: InvokeContext, n: int) -> tuple[str, Exception | None]:
            return str(n * 2), None

        out = mux.dispatch(Envelope.build("Calc_Double", 5).encode())
    """

    def __init__(self) -> None:
        self._table: dict[str, HandlerDescriptor] = {}
        self._lock = _RWLock()

    def register(self, func_key: str, func: Callable[..., Any]) -> HandlerDescriptor:
        """Register ``func`` under ``func_key``, replacing any previous binding.

        Raises:
            InvalidSignatureError: If ``func`` does not fit the supported shapes.
        """
        descriptor = classify(func_key, func)
        with self._lock.write():
            replaced = func_key in self._table
            self._table[func_key] = descriptor
        logger.debug(
            "Registered %s (%s -> %s)%s",
            func_key,
            descriptor.input_shape.value,
            descriptor.output_shape.value,
            " replacing previous handler" if replaced else "",
        )
        return descriptor

    def handler(self, func_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register``."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(func_key, func)
            return func

        return decorator

    def register_object(self, obj: Any, prefix: str | None = None) -> list[str]:
        """Register every public method of ``obj`` as ``<prefix>_<Method>``.

        ``prefix`` defaults to the bare class name of ``obj``.
        """
        prefix = prefix or type(obj).__name__
        keys = []
        for name, member in inspect.getmembers(obj, inspect.ismethod):
            if name.startswith("_"):
                continue
            key = f"{prefix}_{name}"
            self.register(key, member)
            keys.append(key)
        return keys

    def get(self, func_key: str) -> HandlerDescriptor | None:
        with self._lock.read():
            return self._table.get(func_key)

    def keys(self) -> list[str]:
        with self._lock.read():
            return sorted(self._table)

    def __contains__(self, func_key: object) -> bool:
        with self._lock.read():
            return func_key in self._table

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._table)

    def dispatch(self, payload: bytes | str, context: InvokeContext | None = None) -> bytes:
        """Decode an envelope, call its handler, and encode the result.

        Args:
            payload: Encoded envelope.
            context: Context for handlers that accept one. A fresh context is
                created when omitted.

        Returns:
            The encoded result, or ``b""`` when the handler produces no data.

        Raises:
            DecodeError: If the envelope or its data cannot be decoded.
            FunctionNotFoundError: If no handler is bound to the key.
            EncodeError: If the handler's result cannot be encoded.
            Exception: Whatever error the handler returns or raises.
        """
        envelope = Envelope.decode(payload)

        descriptor = self.get(envelope.func_key)
        if descriptor is None:
            logger.warning("No handler for %r", envelope.func_key)
            raise FunctionNotFoundError(func_key=envelope.func_key)

        args: list[Any] = []
        if descriptor.wants_context:
            args.append(context if context is not None else InvokeContext())
        if descriptor.wants_data:
            args.append(envelope.bind(descriptor.input_adapter))

        result = descriptor.func(*args)
        return _encode_result(descriptor, result)

    def lambda_handler(self, event: Any, context: Any = None) -> Any:
        """Entry point for the AWS Lambda Python runtime.

        The runtime hands over the already-parsed event and serializes the
        return value itself. Exceptions propagate so the runtime reports them
        as ``{"errorType", "errorMessage"}`` with the function-error flag.
        """
        raw = self.dispatch(
            _event_payload(event),
            InvokeContext.from_lambda_context(context),
        )
        return from_json(raw) if raw else None


def _event_payload(event: Any) -> bytes:
    if isinstance(event, bytes):
        return event
    return to_json(event)


def _encode_result(descriptor: HandlerDescriptor, result: Any) -> bytes:
    shape = descriptor.output_shape

    if shape is OutputShape.NONE:
        return b""

    if shape is OutputShape.ERROR_ONLY:
        _raise_declared(descriptor, result)
        return b""

    if shape is OutputShape.DATA_AND_ERROR:
        if not isinstance(result, tuple) or len(result) != 2:
            raise EncodeError(
                f"{descriptor.func_key!r} must return a (data, error) pair, "
                f"got {type(result).__name__}"
            )
        data, err = result
        # A declared error wins; data from the same call is discarded.
        _raise_declared(descriptor, err)
        result = data

    if result is None:
        return b""
    try:
        return descriptor.output_adapter.dump_json(result)
    except PydanticSerializationError as e:
        raise EncodeError(f"cannot encode result of {descriptor.func_key!r}: {e}") from e


def _raise_declared(descriptor: HandlerDescriptor, err: Any) -> None:
    if err is None:
        return
    if not isinstance(err, BaseException):
        raise EncodeError(
            f"{descriptor.func_key!r} returned {type(err).__name__} in its error slot"
        )
    raise err
