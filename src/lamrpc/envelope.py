"""Wire envelope shared by both call directions.

Format ``embedded-json/1``::

    {"funcKey": "Foo_Bar", "data": 5}

``data`` is an embedded JSON value. A string-encoded JSON document in ``data``
is *not* unwrapped: ``"data": "5"`` is the string ``"5"``. When the envelope
carries no data the key is omitted, which keeps "no data" distinct from an
explicit ``null``.

``data`` is held as canonical compact JSON from the moment an ``Envelope`` is
built, so ``decode(encode(env))`` gives back ``env.data`` byte for byte.
Non-finite numbers have no JSON form and are rejected.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic_core import PydanticSerializationError, from_json, to_json

from lamrpc.errors import DecodeError, EncodeError

ENVELOPE_FORMAT = "embedded-json/1"


def _check_finite(value: Any) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise EncodeError(f"non-finite number {value!r} has no JSON form")
    if isinstance(value, dict):
        for item in value.values():
            _check_finite(item)
    elif isinstance(value, list):
        for item in value:
            _check_finite(item)


def canonical_json(raw: bytes | str) -> bytes:
    """Return ``raw`` re-serialized as compact JSON.

    Raises:
        EncodeError: ``raw`` is not JSON or holds a non-finite number.
    """
    try:
        value = from_json(raw)
    except ValueError as e:
        raise EncodeError(f"data is not JSON: {e}") from e
    _check_finite(value)
    return to_json(value)


def encode_value(value: Any) -> bytes:
    """Serialize any pydantic-serializable value to compact JSON."""
    try:
        return canonical_json(to_json(value))
    except PydanticSerializationError as e:
        raise EncodeError(f"cannot encode {type(value).__name__}: {e}") from e


def decode_value(raw: bytes | None, type_: Any) -> Any:
    """Deserialize JSON into ``type_``.

    Empty content and JSON ``null`` decode to None without consulting
    ``type_``; the caller asked for a value the callee did not produce.
    """
    if not raw or raw.strip() == b"null":
        return None
    adapter = type_ if isinstance(type_, TypeAdapter) else TypeAdapter(type_)
    try:
        return adapter.validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"cannot decode into {type_!r}: {e}") from e


class Envelope(BaseModel):
    """A function key plus the opaque call data."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    func_key: str = Field(..., alias="funcKey", min_length=1)
    data: bytes | None = Field(default=None, description="Canonical compact JSON; None when absent.")

    @field_validator("data")
    @classmethod
    def _canonical_data(cls, value: bytes | None) -> bytes | None:
        return None if value is None else canonical_json(value)

    @property
    def has_data(self) -> bool:
        return self.data is not None

    @classmethod
    def build(cls, func_key: str, value: Any) -> Envelope:
        return cls(func_key=func_key, data=encode_value(value))

    def bind(self, type_: Any) -> Any:
        """Deserialize ``data`` into ``type_``."""
        if self.data is None:
            raise DecodeError(f"envelope for {self.func_key!r} carries no data")
        adapter = type_ if isinstance(type_, TypeAdapter) else TypeAdapter(type_)
        try:
            return adapter.validate_json(self.data)
        except ValidationError as e:
            raise DecodeError(f"cannot bind data for {self.func_key!r}: {e}") from e

    def encode(self) -> bytes:
        head = b'{"funcKey":' + to_json(self.func_key)
        if self.data is None:
            return head + b"}"
        return head + b',"data":' + self.data + b"}"

    @classmethod
    def decode(cls, raw: bytes | str) -> Envelope:
        try:
            body = from_json(raw)
        except ValueError as e:
            raise DecodeError(f"malformed envelope: {e}") from e
        if not isinstance(body, dict):
            raise DecodeError("envelope must be a JSON object")

        data = to_json(body["data"]) if "data" in body else None
        try:
            return cls(func_key=body.get("funcKey"), data=data)
        except ValidationError as e:
            raise DecodeError(f"invalid envelope: {e}") from e
        except EncodeError as e:
            raise DecodeError(f"invalid envelope data: {e.message}") from e
