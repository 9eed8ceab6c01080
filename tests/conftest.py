from __future__ import annotations

import pytest

from lamrpc import ErrorRegistry, Invoker, LocalTransport, Mux


@pytest.fixture
def mux() -> Mux:
    return Mux()


@pytest.fixture
def registry() -> ErrorRegistry:
    return ErrorRegistry.with_defaults()


@pytest.fixture
def invoker(mux: Mux, registry: ErrorRegistry) -> Invoker:
    """Invoker wired to ``mux`` through the in-process transport."""
    return Invoker(LocalTransport(mux), errors=registry)
