"""Tests for handler classification and dispatch."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

import pytest
from pydantic import BaseModel

from lamrpc.context import InvokeContext
from lamrpc.envelope import Envelope, decode_value
from lamrpc.errors import DecodeError, EncodeError, FunctionNotFoundError, InvalidSignatureError
from lamrpc.mux import InputShape, Mux, OutputShape, classify


class Order(BaseModel):
    order_id: str
    quantity: int


class Receipt(BaseModel):
    order_id: str
    total: float


class SpecialContext(InvokeContext):
    """Subclass of the context type; not the context capability itself."""


class Foo:
    def __init__(self) -> None:
        self.pings = 0

    def Bar(self, ctx: InvokeContext, n: int) -> tuple[str, Exception | None]:
        return str(n * 2), None

    def Ping(self) -> None:
        self.pings += 1

    def _hidden(self) -> int:
        return 1


class Doubler:
    def __call__(self, n: int) -> int:
        return n * 2


def _call(mux: Mux, key: str, *data: Any, context: InvokeContext | None = None) -> bytes:
    envelope = Envelope.build(key, data[0]) if data else Envelope(func_key=key)
    return mux.dispatch(envelope.encode(), context)


# =============================================================================
# Classification
# =============================================================================


def _none() -> None:
    pass


def _ctx_err(ctx: InvokeContext) -> Exception | None:
    return None


def _data_data(n: int) -> int:
    return n


def _ctx_data_both(ctx: InvokeContext, n: int) -> tuple[str, Exception | None]:
    return str(n), None


def _optional_err(n: int) -> Optional[Exception]:
    return None


def _bare_err() -> Exception:
    return ValueError("x")


def _variadic_tuple() -> tuple[int, ...]:
    return (1, 2)


def _subclass_ctx(ctx: SpecialContext) -> None:
    pass


class TestClassify:
    @pytest.mark.parametrize(
        ("func", "input_shape", "output_shape"),
        [
            (_none, InputShape.NONE, OutputShape.NONE),
            (_ctx_err, InputShape.CONTEXT_ONLY, OutputShape.ERROR_ONLY),
            (_data_data, InputShape.DATA_ONLY, OutputShape.DATA_ONLY),
            (_ctx_data_both, InputShape.CONTEXT_AND_DATA, OutputShape.DATA_AND_ERROR),
            (_optional_err, InputShape.DATA_ONLY, OutputShape.ERROR_ONLY),
            (_bare_err, InputShape.NONE, OutputShape.ERROR_ONLY),
            (_variadic_tuple, InputShape.NONE, OutputShape.DATA_ONLY),
            (_subclass_ctx, InputShape.DATA_ONLY, OutputShape.NONE),
            (lambda: 1, InputShape.NONE, OutputShape.DATA_ONLY),
            (lambda x: x, InputShape.DATA_ONLY, OutputShape.DATA_ONLY),
            (Doubler(), InputShape.DATA_ONLY, OutputShape.DATA_ONLY),
        ],
    )
    def test_shapes(self, func: Any, input_shape: InputShape, output_shape: OutputShape) -> None:
        descriptor = classify("k", func)
        assert descriptor.input_shape is input_shape
        assert descriptor.output_shape is output_shape

    def test_concrete_types_captured(self) -> None:
        descriptor = classify("k", _ctx_data_both)
        assert descriptor.input_type is int
        assert descriptor.output_type is str
        assert descriptor.wants_context
        assert descriptor.wants_data

    def test_bound_method_excludes_self(self) -> None:
        descriptor = classify("k", Foo().Bar)
        assert descriptor.input_shape is InputShape.CONTEXT_AND_DATA

    def test_keyword_only_with_default_ignored(self) -> None:
        def handler(n: int, *, scale: int = 2) -> int:
            return n * scale

        assert classify("k", handler).input_shape is InputShape.DATA_ONLY


def _two_without_context(n: int, ctx: InvokeContext) -> None:
    pass


def _three_inputs(ctx: InvokeContext, a: int, b: int) -> None:
    pass


def _second_not_error() -> tuple[int, str]:
    return 1, "x"


def _three_outputs() -> tuple[int, str, Exception | None]:
    return 1, "x", None


def _varargs(*args: int) -> None:
    pass


def _kwargs(**kwargs: int) -> None:
    pass


def _required_keyword(*, n: int) -> None:
    pass


class TestClassifyRejects:
    @pytest.mark.parametrize(
        "func",
        [
            _two_without_context,
            _three_inputs,
            _second_not_error,
            _three_outputs,
            _varargs,
            _kwargs,
            _required_keyword,
        ],
    )
    def test_invalid_signatures(self, func: Any) -> None:
        with pytest.raises(InvalidSignatureError):
            classify("k", func)

    def test_not_callable(self) -> None:
        with pytest.raises(InvalidSignatureError, match="not a function"):
            classify("k", 42)

    def test_empty_key(self) -> None:
        with pytest.raises(InvalidSignatureError, match="must not be empty"):
            classify("", _none)

    def test_register_raises_and_leaves_table_untouched(self, mux: Mux) -> None:
        with pytest.raises(InvalidSignatureError) as exc_info:
            mux.register("bad", _three_inputs)

        assert exc_info.value.func_key == "bad"
        assert "bad" not in mux


# =============================================================================
# Registration
# =============================================================================


class TestRegister:
    def test_register_and_lookup(self, mux: Mux) -> None:
        mux.register("b", _none)
        mux.register("a", _data_data)

        assert "a" in mux
        assert "missing" not in mux
        assert len(mux) == 2
        assert mux.keys() == ["a", "b"]
        assert mux.get("a").func is _data_data

    def test_duplicate_key_overwrites(self, mux: Mux) -> None:
        mux.register("k", lambda: "first")
        mux.register("k", lambda: "second")

        assert len(mux) == 1
        assert decode_value(_call(mux, "k"), str) == "second"

    def test_decorator(self, mux: Mux) -> None:
        @mux.handler("Calc_Triple")
        def triple(n: int) -> int:
            return n * 3

        assert triple(2) == 6
        assert decode_value(_call(mux, "Calc_Triple", 4), int) == 12

    def test_register_object(self, mux: Mux) -> None:
        foo = Foo()
        keys = mux.register_object(foo)

        assert sorted(keys) == ["Foo_Bar", "Foo_Ping"]
        assert "Foo__hidden" not in mux

        _call(mux, "Foo_Ping")
        assert foo.pings == 1

    def test_register_object_prefix(self, mux: Mux) -> None:
        assert sorted(mux.register_object(Foo(), prefix="Svc")) == ["Svc_Bar", "Svc_Ping"]


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    def test_context_and_data_doubling(self, mux: Mux) -> None:
        def double(ctx: InvokeContext, n: int) -> tuple[str, Exception | None]:
            return str(n * 2), None

        mux.register("Foo_Bar", double)
        out = _call(mux, "Foo_Bar", 5)

        assert decode_value(out, str) == "10"

    def test_unregistered_key(self, mux: Mux) -> None:
        mux.register("Foo_Bar", _data_data)

        for payload in (
            Envelope(func_key="X").encode(),
            Envelope.build("X", 5).encode(),
            Envelope.build("X", {"anything": [1, 2]}).encode(),
        ):
            with pytest.raises(FunctionNotFoundError) as exc_info:
                mux.dispatch(payload)
            assert exc_info.value.func_key == "X"

    def test_malformed_envelope(self, mux: Mux) -> None:
        with pytest.raises(DecodeError):
            mux.dispatch(b"{not json")

    def test_no_inputs_no_outputs(self, mux: Mux) -> None:
        calls: list[str] = []

        def ping() -> None:
            calls.append("ping")

        mux.register("ping", ping)
        assert _call(mux, "ping") == b""
        assert calls == ["ping"]

    def test_context_is_forwarded(self, mux: Mux) -> None:
        seen: list[InvokeContext] = []

        def whoami(ctx: InvokeContext) -> str:
            seen.append(ctx)
            return ctx.request_id

        mux.register("whoami", whoami)
        ctx = InvokeContext(request_id="req-1")

        assert decode_value(_call(mux, "whoami", context=ctx), str) == "req-1"
        assert seen == [ctx]

    def test_fresh_context_when_none_supplied(self, mux: Mux) -> None:
        def whoami(ctx: InvokeContext) -> str:
            return ctx.request_id

        mux.register("whoami", whoami)
        assert decode_value(_call(mux, "whoami"), str)

    def test_model_input_and_output(self, mux: Mux) -> None:
        def checkout(order: Order) -> Receipt:
            return Receipt(order_id=order.order_id, total=order.quantity * 2.5)

        mux.register("Shop_Checkout", checkout)
        out = _call(mux, "Shop_Checkout", Order(order_id="o-1", quantity=4))

        assert decode_value(out, Receipt) == Receipt(order_id="o-1", total=10.0)

    def test_input_decoded_into_declared_type(self, mux: Mux) -> None:
        mux.register("double", lambda n: n * 2)
        mux.register("typed", _data_data)

        with pytest.raises(DecodeError):
            _call(mux, "typed", "abc")
        with pytest.raises(DecodeError, match="no data"):
            _call(mux, "typed")

    def test_data_only_none_result_is_empty(self, mux: Mux) -> None:
        def nothing(n: int) -> int | None:
            return None

        mux.register("nothing", nothing)
        assert _call(mux, "nothing", 1) == b""

    def test_handler_exceptions_propagate(self, mux: Mux) -> None:
        def explode() -> None:
            raise RuntimeError("kaboom")

        mux.register("explode", explode)
        with pytest.raises(RuntimeError, match="kaboom"):
            _call(mux, "explode")

    def test_unencodable_result(self, mux: Mux) -> None:
        mux.register("opaque", lambda: object())
        with pytest.raises(EncodeError, match="opaque"):
            _call(mux, "opaque")


class TestDeclaredErrors:
    def test_error_only_raises_returned_error(self, mux: Mux) -> None:
        err = ValueError("declared")

        def check(ctx: InvokeContext) -> Exception | None:
            return err

        mux.register("check", check)
        with pytest.raises(ValueError) as exc_info:
            _call(mux, "check")
        assert exc_info.value is err

    def test_error_only_success(self, mux: Mux) -> None:
        mux.register("ok", _ctx_err)
        assert _call(mux, "ok") == b""

    def test_error_discards_data(self, mux: Mux) -> None:
        """A declared error wins over data returned by the same call."""
        err = KeyError("missing")

        def lookup(n: int) -> tuple[str, Exception | None]:
            return "partial", err

        mux.register("lookup", lookup)
        with pytest.raises(KeyError) as exc_info:
            _call(mux, "lookup", 1)
        assert exc_info.value is err

    def test_error_precedes_unencodable_data(self, mux: Mux) -> None:
        def broken() -> tuple[Any, Exception | None]:
            return object(), ValueError("declared")

        mux.register("broken", broken)
        with pytest.raises(ValueError, match="declared"):
            _call(mux, "broken")

    def test_non_exception_in_error_slot(self, mux: Mux) -> None:
        def sloppy() -> tuple[int, Exception | None]:
            return 1, "not an exception"  # type: ignore[return-value]

        mux.register("sloppy", sloppy)
        with pytest.raises(EncodeError, match="error slot"):
            _call(mux, "sloppy")

    def test_pair_expected(self, mux: Mux) -> None:
        def single() -> tuple[int, Exception | None]:
            return 1  # type: ignore[return-value]

        mux.register("single", single)
        with pytest.raises(EncodeError, match="pair"):
            _call(mux, "single")


class TestLambdaHandler:
    def test_event_dict(self, mux: Mux) -> None:
        mux.register_object(Foo())
        assert mux.lambda_handler({"funcKey": "Foo_Bar", "data": 5}, None) == "10"

    def test_no_output_returns_none(self, mux: Mux) -> None:
        mux.register_object(Foo())
        assert mux.lambda_handler({"funcKey": "Foo_Ping"}, None) is None

    def test_runtime_context_converted(self, mux: Mux) -> None:
        class RuntimeContext:
            aws_request_id = "aws-req-9"
            function_name = "calc"

            def get_remaining_time_in_millis(self) -> int:
                return 5000

        def whoami(ctx: InvokeContext) -> str:
            return f"{ctx.function_name}:{ctx.request_id}"

        mux.register("whoami", whoami)
        assert mux.lambda_handler({"funcKey": "whoami"}, RuntimeContext()) == "calc:aws-req-9"

    def test_errors_propagate_to_runtime(self, mux: Mux) -> None:
        with pytest.raises(FunctionNotFoundError):
            mux.lambda_handler({"funcKey": "X", "data": 1}, None)

    def test_string_event_is_a_json_string(self, mux: Mux) -> None:
        """A str event is a JSON string value, never re-parsed as an envelope."""
        mux.register_object(Foo())
        with pytest.raises(DecodeError, match="JSON object"):
            mux.lambda_handler('{"funcKey": "Foo_Bar", "data": 5}', None)


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    def test_register_while_dispatching(self, mux: Mux) -> None:
        def adder(offset: int) -> Any:
            return lambda n: n + offset

        for i in range(10):
            mux.register(f"existing_{i}", adder(i))

        def dispatch(i: int) -> int:
            return decode_value(_call(mux, f"existing_{i % 10}", i), int)

        def register(i: int) -> None:
            mux.register(f"new_{i}", lambda: i)

        with ThreadPoolExecutor(max_workers=8) as pool:
            dispatched = [pool.submit(dispatch, i) for i in range(200)]
            registered = [pool.submit(register, i) for i in range(100)]
            results = [f.result(timeout=10) for f in dispatched]
            for f in registered:
                f.result(timeout=10)

        assert results == [i + i % 10 for i in range(200)]
        assert len(mux) == 110

    def test_slow_handler_does_not_block_registration(self, mux: Mux) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow() -> bool:
            started.set()
            return release.wait(timeout=5)

        mux.register("slow", slow)
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(_call, mux, "slow")
            assert started.wait(timeout=5)

            # Would block until the handler returns if the lock were held.
            mux.register("other", _none)
            assert _call(mux, "other") == b""
            assert not future.done()

            release.set()
            assert decode_value(future.result(timeout=5), bool) is True
