from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    """Environment-driven defaults for lamrpc transports.

    Only the HTTP transport reads these; the Mux and Invoker take everything
    they need as arguments.
    """

    endpoint_url: str = "http://localhost:9001"
    function_name: str = "function"
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> Settings:
        defaults = cls()
        return cls(
            endpoint_url=os.environ.get("LAMRPC_ENDPOINT_URL", defaults.endpoint_url).rstrip("/"),
            function_name=os.environ.get("LAMRPC_FUNCTION_NAME", defaults.function_name),
            timeout_seconds=_env_float("LAMRPC_TIMEOUT_SECONDS", defaults.timeout_seconds),
        )


settings = Settings.from_env()
